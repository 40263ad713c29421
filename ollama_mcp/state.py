"""Chat session registry for the HTTP host."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .config import Config, config as default_config
from .ollama_client import OllamaClient
from .session import ChatSession

logger = logging.getLogger(__name__)


@dataclass
class SessionEntry:
    session: ChatSession
    created_at: datetime = field(default_factory=datetime.now)
    last_access: datetime = field(default_factory=datetime.now)


class SessionManager:
    """
    Manages chat sessions across requests.

    Handles:
    - Session creation and retrieval
    - Shared inference client for all sessions
    - Session TTL cleanup (expired sessions are closed)
    """

    def __init__(
        self,
        cfg: Optional[Config] = None,
        session_factory: Optional[Callable[[str, Config, OllamaClient], ChatSession]] = None,
        client: Optional[OllamaClient] = None,
    ):
        self.config = cfg or default_config
        self._session_factory = session_factory or _default_session
        self._sessions: Dict[str, SessionEntry] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._client: Optional[OllamaClient] = client

    @property
    def client(self) -> OllamaClient:
        if self._client is None:
            self._client = OllamaClient(self.config)
        return self._client

    async def start(self):
        """Start background cleanup task."""
        self._cleanup_task = asyncio.create_task(self._cleanup_expired())
        logger.info("Session manager started")

    async def stop(self):
        """Stop cleanup task and close every session."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            entries = list(self._sessions.values())
            self._sessions.clear()

        for entry in entries:
            await entry.session.close()

        if self._client is not None:
            await self._client.close()
            self._client = None
        logger.info("Session manager stopped")

    async def get_or_create(self, session_id: str) -> SessionEntry:
        """Get existing session or create new one."""
        async with self._lock:
            if session_id not in self._sessions:
                session = self._session_factory(session_id, self.config, self.client)
                self._sessions[session_id] = SessionEntry(session=session)
                logger.info(f"Created new session: {session_id}")

            entry = self._sessions[session_id]
            entry.last_access = datetime.now()
            return entry

    async def remove(self, session_id: str) -> bool:
        """Close and forget a session."""
        async with self._lock:
            entry = self._sessions.pop(session_id, None)

        if entry is None:
            return False

        await entry.session.close()
        logger.info(f"Closed session: {session_id}")
        return True

    async def _cleanup_expired(self):
        """Close sessions idle for longer than the TTL."""
        while True:
            await asyncio.sleep(60)

            async with self._lock:
                now = datetime.now()
                ttl = timedelta(seconds=self.config.session_ttl)
                expired = [
                    sid for sid, entry in self._sessions.items()
                    if now - entry.last_access > ttl
                ]
                entries = [self._sessions.pop(sid) for sid in expired]

            for sid, entry in zip(expired, entries):
                await entry.session.close()
                logger.info(f"Expired session: {sid}")

    @property
    def session_count(self) -> int:
        """Number of active sessions."""
        return len(self._sessions)


def _default_session(session_id: str, cfg: Config, client: OllamaClient) -> ChatSession:
    return ChatSession(session_id, cfg=cfg, client=client)
