"""
Ollama MCP Orchestrator

Streaming inference client for Ollama combined with a multi-server
MCP tool-call orchestrator.

Components:
- transport: Streaming HTTP requests against the inference server
- ndjson: Line decoding across chunk boundaries
- ollama_client: Typed inference events and error classification
- tool_schema: Provider catalog <-> function-calling schema
- provider: One MCP tool provider connection (stdio or HTTP)
- orchestrator: Merged catalog and concurrent call dispatch
- session: Two-phase chat turn, history, notifications
- api / main: HTTP host
"""

from .errors import (
    ConfigError,
    CustomModelError,
    IncompleteStreamError,
    ModelNotInstalled,
    OllamaMcpError,
    ProtocolDecodeError,
    ProviderUnavailable,
    ServerStatusError,
    ToolCallError,
    TransportError,
    UnknownProvider,
)
from .models import (
    ChatMessage,
    CompletionRecord,
    Delta,
    Done,
    InferenceRequest,
    InferenceResult,
    ToolCatalog,
    ToolDescriptor,
    ToolInvocationRequest,
    ToolInvocationResult,
)
from .ollama_client import InferenceStream, OllamaClient
from .orchestrator import Orchestrator
from .session import ChatSession, Notification

__version__ = "0.1.0"
