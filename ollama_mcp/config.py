"""Configuration loaded from environment variables and the provider file."""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # HTTP host
    host: str = field(default_factory=lambda: os.getenv("OLLAMA_MCP_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("OLLAMA_MCP_PORT", "8000")))
    debug: bool = field(default_factory=lambda: bool(os.getenv("DEBUG")))

    # Ollama
    ollama_url: str = field(default_factory=lambda: os.getenv("OLLAMA_URL", "http://localhost:11434"))
    ollama_model: str = field(default_factory=lambda: os.getenv("OLLAMA_MODEL", "llama3"))
    tools_model: Optional[str] = field(default_factory=lambda: _optional_env("OLLAMA_TOOLS_MODEL"))
    vision_model: Optional[str] = field(default_factory=lambda: _optional_env("OLLAMA_VISION_MODEL"))
    keep_alive: Optional[str] = field(default_factory=lambda: _optional_env("OLLAMA_KEEP_ALIVE"))
    verify_tls: bool = field(default_factory=lambda: os.getenv("OLLAMA_VERIFY_TLS", "true").lower() == "true")
    request_timeout: float = field(default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "300")))
    connect_timeout: float = field(default_factory=lambda: float(os.getenv("CONNECT_TIMEOUT", "10")))

    # Tool providers
    providers_path: str = field(default_factory=lambda: os.getenv("MCP_SERVERS_PATH", "mcp_servers.json"))
    tool_timeout: float = field(default_factory=lambda: float(os.getenv("TOOL_TIMEOUT", "30")))

    # Sessions
    history_messages: int = field(default_factory=lambda: int(os.getenv("CHAT_HISTORY_MESSAGES", "20")))
    session_ttl: int = field(default_factory=lambda: int(os.getenv("SESSION_TTL", "1800")))

    def __post_init__(self):
        self.ollama_url = self.ollama_url.rstrip("/")


# =============================================================================
# Provider configuration
# =============================================================================

class ProviderConfig(BaseModel):
    """Launch/connection parameters for one tool provider."""

    name: str
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_transport(self):
        if not self.command and not self.url:
            raise ValueError("either 'command' or 'url' is required")
        if self.command and self.url:
            raise ValueError("'command' and 'url' are mutually exclusive")
        return self

    @property
    def transport(self) -> str:
        return "stdio" if self.command else "http"


_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(:([^}]*))?\}")


def expand_environment_variables(text: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:default}`` with environment values."""
    def replace_var(match):
        default_value = match.group(3) if match.group(3) else ""
        return os.environ.get(match.group(1), default_value)

    return _ENV_PATTERN.sub(replace_var, text)


def parse_provider_configs(data: Dict[str, Any]) -> Dict[str, ProviderConfig]:
    """Validate a ``{"mcpServers": {...}}`` document into provider configs."""
    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError("'mcpServers' must be an object mapping provider names to parameters")

    providers: Dict[str, ProviderConfig] = {}
    for name, params in servers.items():
        if "__" in name:
            raise ConfigError(f"Provider name '{name}' must not contain '__'")
        try:
            provider = ProviderConfig(name=name, **(params or {}))
        except (TypeError, ValidationError) as e:
            raise ConfigError(f"Invalid configuration for provider '{name}': {e}") from e

        if not provider.enabled:
            logger.info(f"Skipping disabled provider: {name}")
            continue
        providers[name] = provider

    return providers


def load_provider_configs(path: str) -> Dict[str, ProviderConfig]:
    """
    Load provider configuration from a JSON file.

    A missing file means no tool providers are configured.
    """
    if not os.path.exists(path):
        logger.warning(f"Provider configuration '{path}' not found, tool calling disabled")
        return {}

    with open(path, "r") as f:
        text = expand_environment_variables(f.read())

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Provider configuration '{path}' is not valid JSON: {e}") from e

    providers = parse_provider_configs(data)
    logger.info(f"Loaded {len(providers)} provider(s) from {path}")
    return providers


# Global config instance
config = Config()
