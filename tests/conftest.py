import asyncio
import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

# Ensure the repository root is on sys.path so tests run without an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

from ollama_mcp.config import Config, ProviderConfig  # noqa: E402
from ollama_mcp.errors import ProviderUnavailable  # noqa: E402
from ollama_mcp.ollama_client import OllamaClient  # noqa: E402
from ollama_mcp.provider import JsonRpcTransport, McpTransport  # noqa: E402
from ollama_mcp.transport import Transport  # noqa: E402

OLLAMA_URL = "http://ollama.test"


@pytest.fixture
def cfg(tmp_path) -> Config:
    return Config(
        ollama_url=OLLAMA_URL + "/",
        ollama_model="llama3",
        providers_path=str(tmp_path / "mcp_servers.json"),
        tool_timeout=5,
        history_messages=20,
    )


# =============================================================================
# Inference server fakes
# =============================================================================

class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered in the given chunks."""

    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


def ndjson_lines(*messages: Dict[str, Any]) -> bytes:
    return b"".join(json.dumps(m).encode() + b"\n" for m in messages)


def ndjson_response(*messages: Dict[str, Any], chunk_size: Optional[int] = None) -> httpx.Response:
    body = ndjson_lines(*messages)
    if chunk_size:
        chunks = [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)]
    else:
        chunks = [body]
    return httpx.Response(200, stream=ChunkStream(chunks), headers={"content-type": "application/x-ndjson"})


class FakeOllama:
    """
    Scripted inference server.

    ``handler`` receives the decoded request payload (and path) and returns
    an httpx.Response; every payload is recorded in ``requests``.
    """

    def __init__(self, handler: Callable[[str, Dict[str, Any]], httpx.Response]):
        self.handler = handler
        self.requests: List[Dict[str, Any]] = []
        self.paths: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content) if request.content else {}
        self.paths.append(request.url.path)
        self.requests.append(payload)
        return self.handler(request.url.path, payload)

    def client(self, cfg: Config) -> OllamaClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return OllamaClient(cfg, transport=Transport(cfg=cfg, client=http))


# =============================================================================
# Tool provider fakes
# =============================================================================

class FakeProvider:
    """
    Behavior of one scripted MCP provider.

    ``tools`` maps tool names to callables returning the tools/call result
    (or raising). ``delays`` slows individual tools down. Tool starts and
    ends are appended to the shared ``log``.
    """

    def __init__(
        self,
        name: str,
        tools: Optional[Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]]] = None,
        delays: Optional[Dict[str, float]] = None,
        fail_open: bool = False,
        pages: int = 1,
        log: Optional[List[tuple]] = None,
    ):
        self.name = name
        self.tools = tools or {}
        self.delays = delays or {}
        self.fail_open = fail_open
        self.pages = pages
        self.log = log if log is not None else []
        self.connects = 0
        self.closes = 0
        self.notifications: List[str] = []

    def listing(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "description": f"{name} tool",
                "inputSchema": {"type": "object", "properties": {"a": {"type": "number"}}},
            }
            for name in self.tools
        ]


class FakeTransport(JsonRpcTransport):
    def __init__(self, provider: ProviderConfig, timeout: float, server: FakeProvider):
        super().__init__(provider, timeout)
        self.server = server

    async def open(self):
        self.server.connects += 1
        if self.server.fail_open:
            raise ProviderUnavailable(self.provider.name, "connection refused")

    async def close(self):
        self.server.closes += 1

    async def _send(self, message: Dict[str, Any]):
        self.server.notifications.append(message["method"])

    async def _exchange(self, message: Dict[str, Any]) -> Dict[str, Any]:
        method = message["method"]
        params = message["params"]
        reply = {"jsonrpc": "2.0", "id": message["id"]}

        if method == "initialize":
            reply["result"] = {"protocolVersion": params["protocolVersion"], "serverInfo": {"name": self.server.name}}
        elif method == "tools/list":
            listing = self.server.listing()
            page = int(params.get("cursor", 0))
            size = max(1, -(-len(listing) // self.server.pages))
            result: Dict[str, Any] = {"tools": listing[page * size:(page + 1) * size]}
            if page + 1 < self.server.pages:
                result["nextCursor"] = str(page + 1)
            reply["result"] = result
        elif method == "tools/call":
            name = params["name"]
            self.server.log.append((self.server.name, name, "start"))
            await asyncio.sleep(self.server.delays.get(name, 0))
            if name not in self.server.tools:
                reply["error"] = {"code": -32602, "message": f"Unknown tool: {name}"}
            else:
                reply["result"] = self.server.tools[name](params["arguments"])
            self.server.log.append((self.server.name, name, "end"))
        else:
            reply["error"] = {"code": -32601, "message": "Method not found"}

        return reply


def fake_factory(*servers: FakeProvider):
    by_name = {server.name: server for server in servers}

    def factory(provider: ProviderConfig, timeout: float) -> McpTransport:
        return FakeTransport(provider, timeout, by_name[provider.name])

    return factory


def provider_configs(*names: str) -> Dict[str, ProviderConfig]:
    return {name: ProviderConfig(name=name, command="unused") for name in names}


def text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def add_tool(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return text_result(str(arguments["a"] + arguments["b"]))
