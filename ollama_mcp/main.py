"""
Ollama MCP Orchestrator - Main Entry Point

HTTP host for the streaming inference client and the multi-provider
tool orchestrator. A host UI drives chat turns and renders the event
stream.

Usage:
    python -m ollama_mcp.main

Environment Variables:
    OLLAMA_MCP_HOST     - Server host (default: 127.0.0.1)
    OLLAMA_MCP_PORT     - Server port (default: 8000)
    OLLAMA_URL          - Ollama API URL (default: http://localhost:11434)
    OLLAMA_MODEL        - Default chat model (default: llama3)
    OLLAMA_TOOLS_MODEL  - Model used to select tools (default: chat model)
    OLLAMA_VISION_MODEL - Model used when images are attached
    OLLAMA_KEEP_ALIVE   - How long the server keeps the model loaded
    OLLAMA_VERIFY_TLS   - Validate server certificates (default: true)
    MCP_SERVERS_PATH    - Tool provider configuration (default: mcp_servers.json)
    TOOL_TIMEOUT        - Seconds per tool provider request (default: 30)
    SESSION_TTL         - Session TTL in seconds (default: 1800)
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from .api import handle_error, router as api_router
from .config import Config, config as default_config
from .errors import OllamaMcpError
from .state import SessionManager

logger = logging.getLogger(__name__)


def configure_logging(cfg: Config):
    logging.basicConfig(
        level=logging.DEBUG if cfg.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def create_app(cfg: Optional[Config] = None, sessions: Optional[SessionManager] = None) -> FastAPI:
    """Build the FastAPI application."""
    cfg = cfg or default_config
    sessions = sessions or SessionManager(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown lifecycle."""
        logger.info("=" * 60)
        logger.info("Ollama MCP Orchestrator Starting")
        logger.info("=" * 60)

        await sessions.start()

        logger.info(f"Ollama URL: {cfg.ollama_url}")
        logger.info(f"Ollama Model: {cfg.ollama_model}")
        logger.info(f"Tool providers: {cfg.providers_path}")
        logger.info(f"Session TTL: {cfg.session_ttl}s")
        logger.info(f"Server ready at http://{cfg.host}:{cfg.port}")

        yield

        logger.info("Shutting down...")
        await sessions.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Ollama MCP Orchestrator",
        description=(
            "Streaming Ollama inference with tool calls routed to "
            "multiple MCP tool providers."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.sessions = sessions
    app.state.config = cfg
    app.add_exception_handler(OllamaMcpError, handle_error)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "session_count": sessions.session_count,
            "ollama_url": cfg.ollama_url,
            "model": cfg.ollama_model,
        }

    @app.get("/")
    async def root():
        """Root endpoint with basic info."""
        return {
            "name": "Ollama MCP Orchestrator",
            "version": "0.1.0",
            "endpoints": {
                "models": "/v1/models",
                "inference": "/v1/inference",
                "turn": "/v1/sessions/{session_id}/turn",
                "tools": "/v1/sessions/{session_id}/tools",
                "tool_calls": "/v1/sessions/{session_id}/tools/call",
                "health": "/health",
            },
        }

    return app


def main():
    """Run the orchestrator server."""
    configure_logging(default_config)
    uvicorn.run(
        create_app(default_config),
        host=default_config.host,
        port=default_config.port,
        log_level="debug" if default_config.debug else "info",
    )


if __name__ == "__main__":
    main()
