"""
Chat session: tool orchestration followed by a streamed answer.

A turn runs in two strictly sequential phases:
1. Tool phase: the merged tool catalog is attached to a non-streaming
   chat call; any calls the model requests are dispatched to their
   providers and the results are folded into the prompt.
2. Answer phase: the chat call is streamed and its events forwarded.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from .config import Config, config as default_config
from .errors import ConfigError, OllamaMcpError
from .models import (
    ChatExchange,
    ChatMessage,
    ChatRole,
    Done,
    InferenceEvent,
    InferenceRequest,
    InferenceResult,
    ToolCatalog,
    ToolInvocationRequest,
    ToolInvocationResult,
)
from .ollama_client import InferenceStream, OllamaClient
from .orchestrator import Orchestrator
from .tool_schema import from_ollama_tool_calls, to_ollama_tools

logger = logging.getLogger(__name__)

TOOL_CONTEXT_PROMPT = (
    "Respond to the user's prompt using the provided context information. "
    "Cite sources with url when available.\n"
    "User Prompt: '{query}'\n"
    "Context from Tools Calling: '{context}'\n"
)


@dataclass
class Notification:
    """Progress or failure report for the host UI."""
    level: str  # "progress", "success", "warning" or "failure"
    title: str
    message: Optional[str] = None


NotificationSink = Callable[[Notification], None]

_LOG_LEVELS = {
    "progress": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "failure": logging.ERROR,
}


def log_notification(notification: Notification):
    """Default sink: write notifications to the log."""
    suffix = f": {notification.message}" if notification.message else ""
    logger.log(_LOG_LEVELS.get(notification.level, logging.INFO), f"{notification.title}{suffix}")


class ChatSession:
    """
    Session-scoped state for one conversation.

    Tracks:
    - The tool orchestrator, built from provider configuration on first use
    - Conversation history (answered exchanges)
    - The currently streaming answer, so a retry can abandon it
    """

    def __init__(
        self,
        session_id: str,
        cfg: Optional[Config] = None,
        client: Optional[OllamaClient] = None,
        orchestrator_factory: Optional[Callable[[Config], Orchestrator]] = None,
        notify: Optional[NotificationSink] = None,
        history: Optional[List[ChatExchange]] = None,
    ):
        self.session_id = session_id
        self.config = cfg or default_config
        self.client = client or OllamaClient(self.config)
        self._owns_client = client is None
        self._orchestrator_factory = orchestrator_factory or Orchestrator.from_config
        self._orchestrator: Optional[Orchestrator] = None
        self.notify = notify or log_notification
        self.history: List[ChatExchange] = list(history or [])
        self._active_stream: Optional[InferenceStream] = None

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    @property
    def orchestrator(self) -> Orchestrator:
        """Orchestrator for this session, initialized on first use."""
        if self._orchestrator is None:
            self._orchestrator = self._orchestrator_factory(self.config)
            logger.info(f"Session {self.session_id}: {len(self._orchestrator.provider_names)} tool provider(s)")
        return self._orchestrator

    def run_inference(self, request: InferenceRequest) -> InferenceStream:
        """Streamed inference (RunInference)."""
        return self.client.stream(request)

    async def run_inference_sync(self, request: InferenceRequest) -> InferenceResult:
        """Single assembled answer (RunInferenceSync)."""
        return await self.client.run(request)

    async def get_merged_tool_catalog(
        self,
        use_cache: bool = True,
        providers: Optional[List[str]] = None,
    ) -> ToolCatalog:
        """Merged tool catalog; provider failures are reported to the sink."""
        catalog = await self.orchestrator.get_merged_tool_catalog(use_cache=use_cache, providers=providers)
        for name, reason in catalog.failures.items():
            self.notify(Notification("warning", f"Tool server '{name}' unavailable", reason))
        return catalog

    async def dispatch_calls(self, requests: List[ToolInvocationRequest]) -> List[ToolInvocationResult]:
        """Dispatch tool calls; per-call failures are reported to the sink."""
        results = await self.orchestrator.dispatch_calls(requests)
        for result in results:
            if not result.ok:
                self.notify(Notification("warning", f"Tool '{result.name}' failed", result.error))
        return results

    # -------------------------------------------------------------------------
    # Chat turn
    # -------------------------------------------------------------------------

    async def run_turn(
        self,
        query: str,
        images: Optional[List[str]] = None,
        use_tools: bool = True,
        providers: Optional[List[str]] = None,
    ) -> AsyncIterator[InferenceEvent]:
        """
        Run one chat turn and yield the answer's events.

        The answered exchange is appended to the history once the
        completion record arrives. Errors are reported to the sink and
        re-raised.
        """
        self.cancel_turn()
        stream: Optional[InferenceStream] = None

        try:
            tool_context: Optional[Tuple[str, List[Dict[str, Any]]]] = None
            if use_tools and self._has_tool_providers():
                tool_context = await self._tool_phase(query, images, providers)

            self.notify(Notification("progress", "Inference..."))

            model = self.config.ollama_model
            if images and self.config.vision_model:
                model = self.config.vision_model

            request = InferenceRequest(
                model=model,
                messages=self._messages_for_inference(query, images, tool_context and tool_context[0]),
                keep_alive=self.config.keep_alive,
            )

            parts: List[str] = []
            stream = self.client.stream(request)
            self._active_stream = stream
            async with stream:
                async for event in stream:
                    if isinstance(event, Done):
                        self._record_exchange(model, query, "".join(parts), images,
                                              tool_context and tool_context[1], event)
                        self.notify(Notification("success", "Inference Done."))
                    else:
                        parts.append(event.content)
                    yield event

        except OllamaMcpError as e:
            self.notify(Notification("failure", e.title, e.remediation or e.message))
            raise
        finally:
            # A newer turn may already own the slot
            if stream is not None and self._active_stream is stream:
                self._active_stream = None

    def _has_tool_providers(self) -> bool:
        """Whether any provider is configured; a broken provider file disables tools."""
        try:
            return bool(self.orchestrator.provider_names)
        except ConfigError as e:
            logger.warning(f"Session {self.session_id}: answering without tools: {e.message}")
            self.notify(Notification("warning", e.title, e.message))
            return False

    def cancel_turn(self):
        """Abandon the answer currently being streamed, if any."""
        if self._active_stream is not None:
            logger.info(f"Session {self.session_id}: abandoning in-flight answer")
            self._active_stream.cancel()
            self._active_stream = None

    async def _tool_phase(
        self,
        query: str,
        images: Optional[List[str]],
        providers: Optional[List[str]],
    ) -> Optional[Tuple[str, List[Dict[str, Any]]]]:
        """Let the model pick tools, run them, and return (context, tool metadata)."""
        self.notify(Notification("progress", "Tool Calling..."))

        catalog = await self.get_merged_tool_catalog(use_cache=True, providers=providers)
        if not catalog.tools:
            logger.info(f"Session {self.session_id}: no tools available, skipping tool phase")
            return None

        request = InferenceRequest(
            model=self.config.tools_model or self.config.ollama_model,
            messages=self._messages_for_inference(query, images),
            keep_alive=self.config.keep_alive,
            tools=to_ollama_tools(catalog),
        )
        response = await self.client.run(request)
        if not response.tool_calls:
            logger.info(f"Session {self.session_id}: model requested no tools")
            return None

        requests = from_ollama_tool_calls(response.tool_calls)
        results = await self.dispatch_calls(requests)
        if not results:
            return None

        context = json.dumps([r.to_dict() for r in results])
        meta = [
            {"id": r.request_id, "provider": r.provider, "tool": r.tool, "arguments": req.arguments, "ok": r.ok}
            for req, r in zip(requests, results)
        ]
        return context, meta

    def _messages_for_inference(
        self,
        query: str,
        images: Optional[List[str]] = None,
        tool_context: Optional[str] = None,
    ) -> List[ChatMessage]:
        """Replay the history window and append the user prompt."""
        messages: List[ChatMessage] = []
        window = self.history[-self.config.history_messages:] if self.config.history_messages > 0 else []
        for exchange in window:
            messages.extend(exchange.messages)

        content = query
        if tool_context:
            content = TOOL_CONTEXT_PROMPT.format(query=query, context=tool_context)

        messages.append(ChatMessage(role=ChatRole.USER, content=content, images=images or None))
        return messages

    def _record_exchange(
        self,
        model: str,
        query: str,
        answer: str,
        images: Optional[List[str]],
        tools: Optional[List[Dict[str, Any]]],
        done: Done,
    ):
        self.history.append(ChatExchange(
            model=model,
            messages=[
                ChatMessage(role=ChatRole.USER, content=query, images=images or None),
                ChatMessage(role=ChatRole.ASSISTANT, content=answer),
            ],
            images=images or None,
            tools=tools,
            done=done.record,
        ))

    # -------------------------------------------------------------------------
    # Persistence and lifecycle
    # -------------------------------------------------------------------------

    def export_history(self) -> List[Dict[str, Any]]:
        """History as plain dictionaries, for the host to persist."""
        return [exchange.model_dump(mode="json", exclude_none=True) for exchange in self.history]

    def load_history(self, data: List[Dict[str, Any]]):
        """Resume a conversation from persisted history."""
        self.history = [ChatExchange.model_validate(item) for item in data]

    async def reload(self):
        """Tear down provider state after configuration was edited."""
        if self._orchestrator is not None:
            await self._orchestrator.close()
            self._orchestrator = None
            logger.info(f"Session {self.session_id}: provider configuration reloaded")

    async def close(self):
        """End the session: abandon streaming, close providers and the client."""
        self.cancel_turn()
        await self.reload()
        if self._owns_client:
            await self.client.close()
