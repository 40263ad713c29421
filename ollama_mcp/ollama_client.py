"""Ollama API streaming client."""

import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

from .config import Config, config as default_config
from .errors import (
    IncompleteStreamError,
    OllamaMcpError,
    ServerStatusError,
    TransportError,
    classify_server_error,
)
from .models import CompletionRecord, Delta, Done, InferenceEvent, InferenceRequest, InferenceResult
from .ndjson import decode_ndjson
from .transport import Transport

logger = logging.getLogger(__name__)


class InferenceStream:
    """
    Single-pass async sequence of inference events.

    Zero or more ``Delta`` events are followed by exactly one ``Done``.
    ``cancel()`` stops forwarding events and the next iteration step
    releases the underlying HTTP response; ``aclose()`` releases it
    immediately. Also usable as an async context manager, which closes
    the stream on exit.
    """

    def __init__(self, events: AsyncGenerator[InferenceEvent, None]):
        self._events = events
        self._cancelled = False
        self._finished = False
        self._closed = False

    def __aiter__(self) -> "InferenceStream":
        return self

    async def __anext__(self) -> InferenceEvent:
        if self._cancelled or self._finished:
            await self.aclose()
            raise StopAsyncIteration

        try:
            event = await self._events.__anext__()
        except StopAsyncIteration:
            self._finished = True
            raise

        if self._cancelled:
            # Abandoned while waiting on the server; drop the event
            await self.aclose()
            raise StopAsyncIteration

        if isinstance(event, Done):
            self._finished = True
        return event

    async def __aenter__(self) -> "InferenceStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        """Abandon the stream; no further events are forwarded."""
        self._cancelled = True

    async def aclose(self):
        """Stop the stream and release the transport."""
        self._cancelled = self._cancelled or not self._finished
        if self._closed:
            return
        self._closed = True
        await self._events.aclose()

    async def collect(self) -> InferenceResult:
        """Drain the stream into the final content and completion record."""
        parts: List[str] = []
        try:
            async for event in self:
                if isinstance(event, Delta):
                    parts.append(event.content)
                else:
                    return InferenceResult(content="".join(parts), record=event.record)
        finally:
            await self.aclose()

        raise IncompleteStreamError("Inference stream ended without a completion record")


class OllamaClient:
    """
    Async client for the Ollama API.

    Handles:
    - Streaming generate/chat as typed events (``stream``)
    - Non-streaming generate/chat as an assembled answer (``run``)
    - Server error classification
    - Model listing
    """

    def __init__(self, cfg: Optional[Config] = None, transport: Optional[Transport] = None):
        self.config = cfg or default_config
        self.transport = transport or Transport(cfg=self.config)

    @property
    def base_url(self) -> str:
        return self.transport.base_url

    async def close(self):
        """Close HTTP client."""
        await self.transport.close()

    async def list_models(self) -> List[Dict[str, Any]]:
        """List models installed on the server."""
        data = await self.transport.get_json("/api/tags")
        return data.get("models", [])

    async def list_running(self) -> List[Dict[str, Any]]:
        """List models currently loaded in memory."""
        data = await self.transport.get_json("/api/ps")
        return data.get("models", [])

    def stream(self, request: InferenceRequest) -> InferenceStream:
        """Run a streaming inference (RunInference)."""
        return InferenceStream(self._events(request, stream=True))

    async def run(self, request: InferenceRequest) -> InferenceResult:
        """
        Run a non-streaming inference (RunInferenceSync).

        The single response document goes through the same decoding and
        event mapping as a stream and is drained here.
        """
        return await InferenceStream(self._events(request, stream=False)).collect()

    async def _events(self, request: InferenceRequest, stream: bool) -> AsyncIterator[InferenceEvent]:
        payload = request.to_payload(stream=stream)
        tools_count = len(request.tools) if request.tools else 0
        logger.info(f"Starting inference: endpoint={request.endpoint}, model={request.model}, "
                    f"stream={stream}, tools={tools_count}")

        tool_calls: List[Dict[str, Any]] = []
        deltas = 0
        chunks = self.transport.stream(request.endpoint, payload)
        messages = decode_ndjson(chunks)

        try:
            async for message in messages:
                if "error" in message:
                    raise server_error(str(message["error"]), request.model)

                calls = (message.get("message") or {}).get("tool_calls")
                if calls:
                    tool_calls.extend(calls)

                content = message_content(message)
                if content:
                    deltas += 1
                    yield Delta(content)

                if message.get("done"):
                    record = CompletionRecord.from_message(message, tool_calls)
                    logger.info(f"Inference done: model={record.model or request.model}, "
                                f"deltas={deltas}, eval_count={record.eval_count}, "
                                f"tool_calls={len(tool_calls)}")
                    yield Done(record)
                    return

        except ServerStatusError as e:
            error = classify_status_error(e, request.model)
            logger.error(f"Inference failed: {error.message}")
            raise error
        except OllamaMcpError as e:
            logger.error(f"Inference failed: {e.message}")
            raise
        finally:
            await messages.aclose()
            await chunks.aclose()

        logger.error(f"Inference stream for {request.model} ended without done record")
        raise IncompleteStreamError(
            f"Stream from {request.endpoint} ended after {deltas} fragment(s) without a completion record"
        )


def message_content(message: Dict[str, Any]) -> str:
    """Content fragment of a chat (``message.content``) or generate (``response``) line."""
    inner = message.get("message")
    if isinstance(inner, dict):
        return inner.get("content") or ""
    return message.get("response") or ""


def server_error(text: str, model: str) -> OllamaMcpError:
    """Classify a server-reported error message."""
    return classify_server_error(text, model) or TransportError(f"Server error: {text}", kind="server")


def classify_status_error(error: ServerStatusError, model: str) -> OllamaMcpError:
    """Classify a non-2xx response body, falling back to the status error itself."""
    try:
        body = json.loads(error.body)
    except ValueError:
        return error

    if isinstance(body, dict) and "error" in body:
        classified = classify_server_error(str(body["error"]), model)
        if classified is not None:
            return classified

    return error
