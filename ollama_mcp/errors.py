"""Error taxonomy for inference and tool orchestration.

Every error carries a short ``title`` suitable for a failure notification
and, where one exists, a ``remediation`` hint for the user.
"""

import re
from typing import Optional


class OllamaMcpError(Exception):
    """Base class for all errors raised by this package."""

    title = "Error"

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "title": self.title,
            "message": self.message,
            "remediation": self.remediation,
        }


class ConfigError(OllamaMcpError):
    title = "Invalid configuration"


# =============================================================================
# Inference errors
# =============================================================================

class TransportError(OllamaMcpError):
    """Connection refused, timeout, TLS failure or unrecognized server failure."""

    title = "Inference server unreachable"

    def __init__(self, message: str, remediation: Optional[str] = None, kind: str = "transport"):
        super().__init__(message, remediation)
        self.kind = kind


class ServerStatusError(TransportError):
    """Non-2xx response whose body did not classify into a known error."""

    title = "Inference server error"

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Server returned HTTP {status_code}: {body}", kind="status")
        self.status_code = status_code
        self.body = body


class ProtocolDecodeError(OllamaMcpError):
    title = "Malformed server response"


class IncompleteStreamError(ProtocolDecodeError):
    title = "Incomplete response"


class ModelNotInstalled(OllamaMcpError):
    title = "Model not installed"

    def __init__(self, model: str, remediation: Optional[str] = None):
        super().__init__(
            f"Model '{model}' is not installed on the server",
            remediation or f"Pull the model first: ollama pull {model}",
        )
        self.model = model


class CustomModelError(OllamaMcpError):
    title = "Custom model error"

    def __init__(self, model: str, file: str):
        super().__init__(
            f"Model '{model}' references a missing or malformed file: {file}",
            f"Model: {model}, File: {file}",
        )
        self.model = model
        self.file = file


# =============================================================================
# Tool provider errors
# =============================================================================

class UnknownProvider(OllamaMcpError):
    title = "Unknown tool"

    def __init__(self, name: str):
        super().__init__(f"No configured provider matches tool '{name}'")
        self.name = name


class ProviderUnavailable(OllamaMcpError):
    title = "Tool server unavailable"

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Provider '{provider}' unavailable: {reason}")
        self.provider = provider
        self.reason = reason


class ToolCallError(OllamaMcpError):
    """The provider answered, but reported the tool call as failed."""

    title = "Tool call failed"

    def __init__(self, provider: str, tool: str, reason: str):
        super().__init__(f"Tool '{tool}' on provider '{provider}' failed: {reason}")
        self.provider = provider
        self.tool = tool
        self.reason = reason


# =============================================================================
# Server error body classification
# =============================================================================

_MODEL_NOT_FOUND = re.compile(r"""model\s+["']?(?P<model>[^"'\s]+)["']?\s+not found""", re.IGNORECASE)
_MISSING_FILE = re.compile(
    r"(?:open|stat)\s+(?P<file>\S+?):\s+no such file or directory", re.IGNORECASE
)
_BAD_MAGIC = re.compile(r"invalid file magic", re.IGNORECASE)
_FILE_HINT = re.compile(r"(?P<file>/[^\s:]+)")


def classify_server_error(message: str, model: str) -> Optional[OllamaMcpError]:
    """
    Map a server-reported error message to a typed error.

    Returns None when the message matches no known condition, leaving the
    caller to fall back to a generic TransportError.
    """
    match = _MODEL_NOT_FOUND.search(message)
    if match:
        return ModelNotInstalled(match.group("model"))

    match = _MISSING_FILE.search(message)
    if match:
        return CustomModelError(model, match.group("file"))

    if _BAD_MAGIC.search(message):
        hint = _FILE_HINT.search(message)
        return CustomModelError(model, hint.group("file") if hint else "unknown")

    return None
