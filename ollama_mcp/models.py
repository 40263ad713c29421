"""Data models for inference requests, events and tool invocations."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# Open-world structured value: tool schemas, arguments and results are
# provider-defined documents.
JSONValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]


# ============================================================================
# Inference Request/Response Models
# ============================================================================

class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChatMessage(BaseModel):
    """Ollama chat message format."""
    role: ChatRole
    content: str = ""
    images: Optional[List[str]] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class InferenceRequest(BaseModel):
    """
    A generate (``prompt``) or chat (``messages``) request.

    Immutable once built; use ``model_copy(update=...)`` to derive a
    follow-up request.
    """
    model_config = ConfigDict(frozen=True)

    model: str
    prompt: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None
    system: Optional[str] = None
    context: Optional[List[int]] = None
    images: Optional[List[str]] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    keep_alive: Optional[Union[str, int]] = None
    tools: Optional[List[Dict[str, Any]]] = None
    format: Optional[Union[str, Dict[str, Any]]] = None

    @property
    def endpoint(self) -> str:
        return "/api/chat" if self.messages is not None else "/api/generate"

    def to_payload(self, stream: bool) -> Dict[str, Any]:
        """Build the request body for the inference server."""
        payload: Dict[str, Any] = {"model": self.model, "stream": stream}

        if self.messages is not None:
            payload["messages"] = [m.to_payload() for m in self.messages]
        else:
            payload["prompt"] = self.prompt or ""
            if self.context:
                payload["context"] = self.context
            if self.images:
                payload["images"] = self.images

        if self.system:
            payload["system"] = self.system
        if self.options:
            payload["options"] = self.options
        if self.keep_alive is not None:
            payload["keep_alive"] = self.keep_alive
        if self.tools:
            payload["tools"] = self.tools
        if self.format is not None:
            payload["format"] = self.format

        return payload


class CompletionRecord(BaseModel):
    """
    Terminal metadata of an inference stream.

    Servers vary in which fields they send, so every field defaults.
    """
    model: str = ""
    created_at: Optional[str] = None
    done_reason: Optional[str] = None
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0
    context: Optional[List[int]] = None
    tool_calls: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_message(cls, message: Dict[str, Any], tool_calls: List[Dict[str, Any]]) -> "CompletionRecord":
        def count(key: str) -> int:
            value = message.get(key)
            return int(value) if isinstance(value, (int, float)) else 0

        context = message.get("context")
        return cls(
            model=message.get("model") or "",
            created_at=message.get("created_at"),
            done_reason=message.get("done_reason"),
            total_duration=count("total_duration"),
            load_duration=count("load_duration"),
            prompt_eval_count=count("prompt_eval_count"),
            prompt_eval_duration=count("prompt_eval_duration"),
            eval_count=count("eval_count"),
            eval_duration=count("eval_duration"),
            context=context if isinstance(context, list) else None,
            tool_calls=tool_calls,
        )


# ============================================================================
# Inference Events
# ============================================================================

@dataclass(frozen=True)
class Delta:
    """Incremental content fragment."""
    content: str


@dataclass(frozen=True)
class Done:
    """Terminal event of an inference stream."""
    record: CompletionRecord


InferenceEvent = Union[Delta, Done]


class ChatExchange(BaseModel):
    """One answered turn of a conversation, as persisted by the host."""
    model: str
    messages: List[ChatMessage]
    images: Optional[List[str]] = None
    tools: Optional[List[Dict[str, Any]]] = None
    done: Optional[CompletionRecord] = None


@dataclass
class InferenceResult:
    """Assembled answer of a drained inference stream."""
    content: str
    record: CompletionRecord

    @property
    def tool_calls(self) -> List[Dict[str, Any]]:
        return self.record.tool_calls


# ============================================================================
# Tool Models
# ============================================================================

@dataclass
class ToolDescriptor:
    """A tool as advertised by one provider."""
    provider: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    @property
    def key(self) -> tuple:
        return (self.provider, self.name)


@dataclass
class ToolInvocationRequest:
    """A model-requested call; ``name`` is the provider-qualified name the model used."""
    request_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolInvocationResult:
    """Outcome of one tool invocation; ``error`` is set on failure."""
    request_id: str
    name: str
    provider: Optional[str] = None
    tool: Optional[str] = None
    content: JSONValue = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.request_id,
            "name": self.name,
            "provider": self.provider,
            "tool": self.tool,
        }
        if self.ok:
            data["content"] = self.content
        else:
            data["error"] = self.error
        return data


@dataclass
class ToolCatalog:
    """Merged tool catalog plus the providers that could not be listed."""
    tools: List[ToolDescriptor] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def __iter__(self):
        return iter(self.tools)

    def __len__(self) -> int:
        return len(self.tools)

    @property
    def degraded(self) -> bool:
        return bool(self.failures)
