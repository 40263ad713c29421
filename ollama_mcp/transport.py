"""Streaming HTTP transport for the inference server."""

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import Config, config as default_config
from .errors import ServerStatusError, TransportError

logger = logging.getLogger(__name__)


class Transport:
    """
    Thin wrapper around ``httpx.AsyncClient`` for one inference server.

    Connection-level failures (refused, timeout, TLS) surface as
    TransportError; non-2xx responses surface as ServerStatusError with
    the raw body so the caller can classify it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        cfg: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        cfg = cfg or default_config
        self.base_url = (base_url or cfg.ollama_url).rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.request_timeout, connect=cfg.connect_timeout),
            verify=cfg.verify_tls,
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def stream(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        """
        POST ``payload`` and yield the raw response body chunk by chunk.

        Closing the generator early releases the underlying connection.
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"POST {url} (streaming)")

        try:
            async with self.client.stream("POST", url, json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise ServerStatusError(response.status_code, body.decode("utf-8", errors="replace"))

                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise translate_http_error(e, url) from e

    async def get_json(self, path: str) -> Dict[str, Any]:
        """GET a JSON document."""
        url = f"{self.base_url}{path}"
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            raise translate_http_error(e, url) from e

        if resp.status_code >= 400:
            raise ServerStatusError(resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {url}: {e}") from e


def translate_http_error(error: httpx.HTTPError, url: str) -> TransportError:
    """Map an httpx exception to a TransportError with a distinct kind."""
    if isinstance(error, httpx.TimeoutException):
        return TransportError(
            f"Request to {url} timed out",
            "Check that the server is running and responsive",
            kind="timeout",
        )

    if isinstance(error, httpx.ConnectError):
        text = str(error)
        if "SSL" in text or "CERTIFICATE" in text.upper():
            return TransportError(
                f"TLS handshake with {url} failed: {text}",
                "Check the server certificate or disable certificate validation",
                kind="tls",
            )
        return TransportError(
            f"Connection to {url} refused: {text}",
            "Check that the server is running and the URL is correct",
            kind="refused",
        )

    return TransportError(f"HTTP error talking to {url}: {error}")
