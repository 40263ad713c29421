"""
Connections to MCP tool providers.

A ProviderConnection never keeps a connection open between calls: every
public operation spawns (or dials) the provider, performs the MCP
handshake, does its work and closes the connection on every exit path.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import Implementation

from .config import ProviderConfig
from .errors import OllamaMcpError, ProviderUnavailable, ToolCallError
from .models import JSONValue, ToolDescriptor
from .tool_schema import from_mcp_tool

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "ollama-mcp-orchestrator", "version": "0.1.0"}

INTERNAL_ERROR = -32603
# Error codes ClientSession reports for a silent or vanished server
REQUEST_TIMEOUT = 408
CONNECTION_CLOSED = -32000


class ConnectionState(str, Enum):
    """Provider connection lifecycle."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RpcError(OllamaMcpError):
    """JSON-RPC error member returned by a provider."""

    title = "Tool server error"

    def __init__(self, code: int, message: str):
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message


# =============================================================================
# Transports
# =============================================================================

class McpTransport(ABC):
    """
    One live MCP channel to a provider.

    A transport instance is opened once and closed once; reconnecting
    always builds a new instance. Results are returned as plain dicts
    using the MCP wire field names.
    """

    def __init__(self, provider: ProviderConfig, timeout: float):
        self.provider = provider
        self.timeout = timeout

    @abstractmethod
    async def open(self):
        """Establish the channel."""

    @abstractmethod
    async def close(self):
        """Release the channel. Safe to call more than once."""

    @abstractmethod
    async def initialize(self) -> Dict[str, Any]:
        """Perform the handshake and return the server's initialize result."""

    @abstractmethod
    async def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one page of the tool listing."""

    @abstractmethod
    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Invoke a tool and return the raw tools/call result."""


class JsonRpcTransport(McpTransport):
    """Transport that frames the JSON-RPC messages itself."""

    def __init__(self, provider: ProviderConfig, timeout: float):
        super().__init__(provider, timeout)
        self._next_id = 0

    @abstractmethod
    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Send a request and return the response with the same id."""

    @abstractmethod
    async def _send(self, message: Dict[str, Any]):
        """Send a message that expects no response."""

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Issue a JSON-RPC request and return its ``result`` member."""
        self._next_id += 1
        message = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params or {},
        }

        try:
            response = await asyncio.wait_for(self._exchange(message), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                self.provider.name, f"'{method}' timed out after {self.timeout:g}s"
            ) from e

        if not isinstance(response, dict):
            raise RpcError(INTERNAL_ERROR, f"malformed '{method}' response")

        if "error" in response:
            error = response["error"]
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RpcError(error.get("code", -1), error.get("message", "Unknown error"))

        result = response.get("result")
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise RpcError(INTERNAL_ERROR, f"'{method}' returned {type(result).__name__}, expected an object")
        return result

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None):
        """Send a JSON-RPC notification."""
        await self._send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def initialize(self) -> Dict[str, Any]:
        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        return await self.request("tools/list", {"cursor": cursor} if cursor else {})

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("tools/call", {"name": name, "arguments": arguments})


class StdioTransport(McpTransport):
    """Provider subprocess driven through an MCP client session over stdio."""

    def __init__(self, provider: ProviderConfig, timeout: float):
        super().__init__(provider, timeout)
        self.session: Optional[ClientSession] = None
        self._stack: Optional[AsyncExitStack] = None

    async def open(self):
        params = StdioServerParameters(
            command=self.provider.command,
            args=list(self.provider.args),
            env={**os.environ, **self.provider.env},
            cwd=self.provider.cwd,
        )
        self._stack = AsyncExitStack()
        try:
            read, write = await self._stack.enter_async_context(stdio_client(params))
            self.session = await self._stack.enter_async_context(ClientSession(
                read,
                write,
                read_timeout_seconds=timedelta(seconds=self.timeout),
                client_info=Implementation(**CLIENT_INFO),
            ))
        except OSError as e:
            raise ProviderUnavailable(
                self.provider.name, f"failed to start '{self.provider.command}': {e}"
            ) from e

        logger.debug(f"Spawned provider '{self.provider.name}'")

    async def _run(self, method: str, call: Callable[[ClientSession], Awaitable[Any]]) -> Dict[str, Any]:
        if self.session is None:
            raise ProviderUnavailable(self.provider.name, "process is not running")

        try:
            result = await call(self.session)
        except McpError as e:
            if e.error.code in (REQUEST_TIMEOUT, CONNECTION_CLOSED):
                raise ProviderUnavailable(self.provider.name, f"'{method}' failed: {e.error.message}") from e
            raise RpcError(e.error.code, e.error.message) from e

        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def initialize(self) -> Dict[str, Any]:
        return await self._run("initialize", lambda session: session.initialize())

    async def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        if cursor:
            return await self._run("tools/list", lambda session: session.list_tools(cursor))
        return await self._run("tools/list", lambda session: session.list_tools())

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run("tools/call", lambda session: session.call_tool(name, arguments))

    async def close(self):
        stack, self._stack = self._stack, None
        self.session = None
        if stack is None:
            return

        try:
            await stack.aclose()
        except Exception:
            logger.warning(f"Provider '{self.provider.name}' did not shut down cleanly", exc_info=True)
        else:
            logger.debug(f"Provider '{self.provider.name}' exited")


class HttpTransport(JsonRpcTransport):
    """Provider reachable over MCP streamable HTTP."""

    def __init__(self, provider: ProviderConfig, timeout: float, client: Optional[httpx.AsyncClient] = None):
        super().__init__(provider, timeout)
        self.url = provider.url
        self.session_id: Optional[str] = None
        self.client = client

    async def open(self):
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout, headers=self.provider.headers)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json, text/event-stream"}
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        return headers

    async def _send(self, message: Dict[str, Any]):
        await self._post(message)

    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._post(message)
        if response is None:
            raise ProviderUnavailable(self.provider.name, f"no response to '{message['method']}'")
        return response

    async def _post(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.client is None:
            raise ProviderUnavailable(self.provider.name, "connection is not open")

        try:
            async with self.client.stream("POST", self.url, json=message, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    raise ProviderUnavailable(self.provider.name, f"HTTP {resp.status_code}: {body[:200]}")

                session_id = resp.headers.get("mcp-session-id")
                if session_id:
                    self.session_id = session_id

                if "id" not in message:
                    return None

                if "text/event-stream" in resp.headers.get("content-type", ""):
                    async for data in _sse_data(resp.aiter_lines()):
                        incoming = _decode_rpc(self.provider.name, data)
                        if isinstance(incoming, dict) and incoming.get("id") == message["id"]:
                            return incoming
                    raise ProviderUnavailable(self.provider.name, "event stream ended without a response")

                incoming = _decode_rpc(self.provider.name, await resp.aread())
                if isinstance(incoming, list):
                    incoming = next((m for m in incoming if m.get("id") == message["id"]), None)
                return incoming

        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.provider.name, f"{type(e).__name__}: {e}") from e

    async def close(self):
        client, self.client = self.client, None
        if client is None:
            return

        try:
            if self.session_id:
                try:
                    await client.delete(self.url, headers=self._headers())
                except httpx.HTTPError as e:
                    logger.debug(f"Session teardown for '{self.provider.name}' failed: {e}")
        finally:
            self.session_id = None
            await client.aclose()


async def _sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data payload of each server-sent event."""
    data: List[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
        elif line.startswith("data:"):
            data.append(line[5:].lstrip())
    if data:
        yield "\n".join(data)


def _decode_rpc(provider: str, raw: Union[str, bytes]) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProviderUnavailable(provider, f"malformed JSON-RPC message: {e}") from e


def create_transport(provider: ProviderConfig, timeout: float) -> McpTransport:
    """Build the transport matching a provider's configuration."""
    if provider.transport == "stdio":
        return StdioTransport(provider, timeout)
    return HttpTransport(provider, timeout)


# =============================================================================
# Provider connection
# =============================================================================

TransportFactory = Callable[[ProviderConfig, float], McpTransport]
Outcome = Union[JSONValue, OllamaMcpError]


class ProviderConnection:
    """
    One configured tool provider.

    Handles:
    - Connect/handshake/disconnect around every operation
    - Tool listing with a cache that can be bypassed
    - Tool invocation (never cached)
    """

    def __init__(
        self,
        provider: ProviderConfig,
        timeout: float = 30.0,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.config = provider
        self.name = provider.name
        self.timeout = timeout
        self.state = ConnectionState.DISCONNECTED
        self._tools: Optional[List[ToolDescriptor]] = None
        self._transport_factory = transport_factory or create_transport

    @property
    def cached_tools(self) -> Optional[List[ToolDescriptor]]:
        return list(self._tools) if self._tools is not None else None

    def invalidate(self):
        """Drop the cached tool catalog."""
        self._tools = None

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[McpTransport]:
        """Open a fresh connection, perform the handshake and always close it."""
        transport = self._transport_factory(self.config, self.timeout)
        self.state = ConnectionState.CONNECTING
        try:
            await transport.open()
            await self._initialize(transport)
            self.state = ConnectionState.CONNECTED
            logger.debug(f"Connected to provider '{self.name}'")
            yield transport
        finally:
            try:
                await transport.close()
            finally:
                self.state = ConnectionState.DISCONNECTED
                logger.debug(f"Disconnected from provider '{self.name}'")

    async def _initialize(self, transport: McpTransport):
        try:
            result = await transport.initialize()
        except RpcError as e:
            raise ProviderUnavailable(self.name, f"initialize rejected: {e.rpc_message}") from e

        server = result.get("serverInfo", {})
        logger.debug(f"Provider '{self.name}' is {server.get('name', '?')} {server.get('version', '')}".rstrip())

    async def list_tools(self, use_cache: bool = True) -> List[ToolDescriptor]:
        """List the provider's tools, from cache when permitted."""
        if use_cache and self._tools is not None:
            return list(self._tools)

        tools: List[ToolDescriptor] = []
        seen = set()

        async with self.connect() as transport:
            cursor = None
            while True:
                try:
                    result = await transport.list_tools(cursor)
                except RpcError as e:
                    raise ProviderUnavailable(self.name, f"tools/list failed: {e.rpc_message}") from e

                for raw in result.get("tools", []):
                    if raw.get("name") in seen:
                        logger.warning(f"Provider '{self.name}' lists tool '{raw.get('name')}' twice, keeping first")
                        continue
                    seen.add(raw.get("name"))
                    tools.append(from_mcp_tool(self.name, raw))

                cursor = result.get("nextCursor")
                if not cursor:
                    break

        self._tools = tools
        logger.info(f"Listed {len(tools)} tools from provider '{self.name}'")
        return list(tools)

    async def invoke_tool(self, tool: str, arguments: Dict[str, Any]) -> JSONValue:
        """Invoke one tool on a fresh connection and return its content."""
        async with self.connect() as transport:
            return await self._call(transport, tool, arguments)

    async def invoke_tools(self, calls: List[Tuple[str, Dict[str, Any]]]) -> List[Outcome]:
        """
        Invoke several tools sequentially over one connection.

        Returns one outcome per call, in order: the tool content, or the
        error for that call. A failure to connect raises ProviderUnavailable.
        Once the connection itself fails, the remaining calls share that error.
        """
        outcomes: List[Outcome] = []

        async with self.connect() as transport:
            broken: Optional[ProviderUnavailable] = None
            for tool, arguments in calls:
                if broken is not None:
                    outcomes.append(broken)
                    continue
                try:
                    outcomes.append(await self._call(transport, tool, arguments))
                except ToolCallError as e:
                    logger.warning(e.message)
                    outcomes.append(e)
                except ProviderUnavailable as e:
                    logger.warning(e.message)
                    broken = e
                    outcomes.append(e)
                except Exception as e:
                    logger.warning(f"Tool '{tool}' on provider '{self.name}' failed unexpectedly", exc_info=True)
                    outcomes.append(ToolCallError(self.name, tool, f"{type(e).__name__}: {e}"))

        return outcomes

    async def _call(self, transport: McpTransport, tool: str, arguments: Dict[str, Any]) -> JSONValue:
        logger.info(f"Calling tool '{tool}' on provider '{self.name}'")
        try:
            result = await transport.call_tool(tool, arguments)
        except RpcError as e:
            raise ToolCallError(self.name, tool, e.rpc_message) from e

        content = result.get("content", [])
        if result.get("isError"):
            raise ToolCallError(self.name, tool, content_text(content) or "tool reported an error")

        if "structuredContent" in result and not content:
            return result["structuredContent"]
        return content


def content_text(content: JSONValue) -> str:
    """Concatenate the text parts of an MCP content list."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return json.dumps(content)
    return "\n".join(
        part.get("text", "") for part in content
        if isinstance(part, dict) and part.get("type") == "text"
    )
