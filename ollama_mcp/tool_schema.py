"""Translation between provider tool catalogs and Ollama function-calling schema."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import UnknownProvider
from .models import ToolDescriptor, ToolInvocationRequest

logger = logging.getLogger(__name__)

SEPARATOR = "__"


def qualify(provider: str, tool: str) -> str:
    """Embed the owning provider in a tool name: ``calc`` + ``add`` -> ``calc__add``."""
    return f"{provider}{SEPARATOR}{tool}"


def split_qualified(name: str, providers: Iterable[str]) -> Tuple[str, str]:
    """
    Split a qualified tool name into (provider, tool).

    The prefix is matched against the configured provider names, longest
    first. Raises UnknownProvider when none matches.
    """
    for provider in sorted(providers, key=len, reverse=True):
        prefix = f"{provider}{SEPARATOR}"
        if name.startswith(prefix) and len(name) > len(prefix):
            return provider, name[len(prefix):]
    raise UnknownProvider(name)


def to_ollama_tools(catalog: Iterable[ToolDescriptor]) -> List[Dict[str, Any]]:
    """Convert provider tool descriptors into the Ollama ``tools`` request field."""
    return [
        {
            "type": "function",
            "function": {
                "name": qualify(tool.provider, tool.name),
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }
        for tool in catalog
    ]


def from_mcp_tool(provider: str, tool: Dict[str, Any]) -> ToolDescriptor:
    """Build a descriptor from one entry of an MCP ``tools/list`` result."""
    schema = tool.get("inputSchema") or {"type": "object", "properties": {}}
    return ToolDescriptor(
        provider=provider,
        name=tool["name"],
        description=tool.get("description") or "",
        input_schema=schema,
    )


def from_ollama_tool_calls(tool_calls: List[Dict[str, Any]]) -> List[ToolInvocationRequest]:
    """
    Convert the model's ``tool_calls`` into invocation requests.

    Each request gets an identifier: the server's call id when present,
    otherwise ``call_<n>`` from the call's position.
    """
    requests = []
    for position, call in enumerate(tool_calls):
        func = call.get("function") or {}
        index = func.get("index", position)
        request_id = call.get("id") or f"call_{index}"
        requests.append(ToolInvocationRequest(
            request_id=str(request_id),
            name=func.get("name") or "",
            arguments=_parse_arguments(func.get("arguments")),
        ))
    return requests


def _parse_arguments(arguments: Optional[Any]) -> Dict[str, Any]:
    # Some servers send arguments as a JSON string rather than an object
    if arguments is None:
        return {}
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            logger.warning(f"Tool call arguments are not JSON: {arguments[:100]}")
            return {"input": arguments}
    if not isinstance(arguments, dict):
        return {"input": arguments}
    return arguments
