"""Newline-delimited JSON decoding across arbitrary chunk boundaries."""

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List

from .errors import ProtocolDecodeError

logger = logging.getLogger(__name__)


class NDJSONDecoder:
    """
    Incremental decoder for newline-delimited JSON.

    Bytes that do not yet form a complete line are kept as a residual and
    prefixed to the next chunk. ``finish()`` decodes a final unterminated
    line. Blank lines are ignored; any other line that is not valid JSON
    raises ProtocolDecodeError.
    """

    def __init__(self):
        self._residual = b""

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """Consume one chunk and return the messages it completes."""
        if not chunk:
            return []

        data = self._residual + chunk
        lines = data.split(b"\n")
        self._residual = lines.pop()

        return [msg for msg in (self._decode(line) for line in lines) if msg is not None]

    def finish(self) -> List[Dict[str, Any]]:
        """Signal end of data; decode the residual as the last message."""
        residual, self._residual = self._residual, b""
        message = self._decode(residual)
        return [message] if message is not None else []

    @staticmethod
    def _decode(line: bytes):
        line = line.strip()
        if not line:
            return None

        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolDecodeError(f"Malformed stream line: {line[:100]!r}") from e

        if not isinstance(message, dict):
            raise ProtocolDecodeError(f"Expected a JSON object per line, got: {line[:100]!r}")

        return message


async def decode_ndjson(chunks: AsyncIterable[bytes]) -> AsyncIterator[Dict[str, Any]]:
    """Decode an async byte-chunk sequence into a single-pass message sequence."""
    decoder = NDJSONDecoder()

    async for chunk in chunks:
        for message in decoder.feed(chunk):
            yield message

    for message in decoder.finish():
        yield message
