"""
HTTP endpoints exposing inference and tool orchestration to a host UI.

Event streams are newline-delimited JSON, one object per event:
- {"type": "delta", "content": "..."}
- {"type": "done", ...completion record...}
- {"type": "error", "error": {...}} if the stream fails after it started
"""

import json
import logging
import secrets
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .errors import (
    ConfigError,
    CustomModelError,
    ModelNotInstalled,
    OllamaMcpError,
    ProtocolDecodeError,
    ProviderUnavailable,
    TransportError,
    UnknownProvider,
)
from .models import Delta, InferenceEvent, InferenceRequest, ToolInvocationRequest
from .state import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"


# =============================================================================
# Request bodies
# =============================================================================

class InferenceBody(InferenceRequest):
    stream: bool = True


class TurnBody(BaseModel):
    query: str
    images: Optional[List[str]] = None
    use_tools: bool = True
    providers: Optional[List[str]] = None


class ToolCallItem(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None


class ToolCallBody(BaseModel):
    calls: List[ToolCallItem]


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/v1/models")
async def list_models(request: Request):
    """Models installed on the inference server."""
    sessions = get_sessions(request)
    return {"models": await sessions.client.list_models()}


@router.post("/v1/inference")
async def inference(body: InferenceBody, request: Request):
    """
    Single generate/chat inference.

    Streams NDJSON events, or returns the assembled answer when
    ``stream`` is false.
    """
    client = get_sessions(request).client
    inference_request = InferenceRequest(**body.model_dump(exclude={"stream"}))

    if not body.stream:
        result = await client.run(inference_request)
        return {"content": result.content, "done": result.record.model_dump(mode="json")}

    return await _stream_events(client.stream(inference_request))


@router.post("/v1/sessions/{session_id}/turn")
async def chat_turn(session_id: str, body: TurnBody, request: Request):
    """Two-phase chat turn (tools, then streamed answer) as NDJSON events."""
    entry = await get_sessions(request).get_or_create(session_id)
    logger.info(f"Chat turn: session={session_id}, images={len(body.images or [])}, tools={body.use_tools}")

    events = entry.session.run_turn(
        body.query,
        images=body.images,
        use_tools=body.use_tools,
        providers=body.providers,
    )
    return await _stream_events(events, headers={"X-Session-ID": session_id})


@router.get("/v1/sessions/{session_id}/tools")
async def list_tools(session_id: str, request: Request, refresh: bool = False):
    """Merged tool catalog of the session's providers."""
    entry = await get_sessions(request).get_or_create(session_id)
    catalog = await entry.session.get_merged_tool_catalog(use_cache=not refresh)
    return {
        "tools": [
            {
                "provider": tool.provider,
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.input_schema,
            }
            for tool in catalog.tools
        ],
        "failures": catalog.failures,
    }


@router.post("/v1/sessions/{session_id}/tools/call")
async def call_tools(session_id: str, body: ToolCallBody, request: Request):
    """Dispatch a batch of provider-qualified tool calls."""
    entry = await get_sessions(request).get_or_create(session_id)
    requests = [
        ToolInvocationRequest(
            request_id=call.id or f"call_{i}_{secrets.token_hex(4)}",
            name=call.name,
            arguments=call.arguments,
        )
        for i, call in enumerate(body.calls)
    ]
    results = await entry.session.dispatch_calls(requests)
    return {"results": [r.to_dict() for r in results]}


@router.get("/v1/sessions/{session_id}/history")
async def get_history(session_id: str, request: Request):
    entry = await get_sessions(request).get_or_create(session_id)
    return {"history": entry.session.export_history()}


@router.post("/v1/sessions/{session_id}/reload")
async def reload_providers(session_id: str, request: Request):
    """Provider configuration was edited: drop connections and caches."""
    entry = await get_sessions(request).get_or_create(session_id)
    await entry.session.reload()
    return {"status": "reloaded"}


@router.delete("/v1/sessions/{session_id}")
async def close_session(session_id: str, request: Request):
    closed = await get_sessions(request).remove(session_id)
    return {"closed": closed}


# =============================================================================
# Streaming helpers
# =============================================================================

async def _stream_events(events, headers: Optional[Dict[str, str]] = None) -> StreamingResponse:
    """
    Wrap an event sequence in an NDJSON response.

    The first event is awaited before responding so that failures which
    happen before any output (unknown model, unreachable server, tool
    phase errors) become a proper error status.
    """
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        first = None
    except BaseException:
        await events.aclose()
        raise

    return StreamingResponse(
        _ndjson_body(first, events),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", **(headers or {})},
    )


async def _ndjson_body(first: Optional[InferenceEvent], events) -> AsyncIterator[str]:
    try:
        if first is not None:
            yield event_line(first)
        async for event in events:
            yield event_line(event)
    except OllamaMcpError as e:
        logger.error(f"Stream aborted: {e.message}")
        yield json.dumps({"type": "error", "error": e.to_dict()}) + "\n"
    finally:
        # Client disconnects land here too; closing releases the upstream transport
        await events.aclose()


def event_line(event: InferenceEvent) -> str:
    if isinstance(event, Delta):
        data = {"type": "delta", "content": event.content}
    else:
        data = {"type": "done", **event.record.model_dump(mode="json")}
    return json.dumps(data) + "\n"


# =============================================================================
# Error responses
# =============================================================================

_STATUS_CODES = [
    (ModelNotInstalled, 404),
    (CustomModelError, 422),
    (UnknownProvider, 404),
    (ProviderUnavailable, 503),
    (ProtocolDecodeError, 502),
    (TransportError, 502),
    (ConfigError, 500),
]


def status_for(error: OllamaMcpError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 500


async def handle_error(request: Request, error: OllamaMcpError) -> JSONResponse:
    """Exception handler turning package errors into JSON error bodies."""
    logger.warning(f"{request.method} {request.url.path} failed: {error.message}")
    return JSONResponse(status_code=status_for(error), content={"error": error.to_dict()})
