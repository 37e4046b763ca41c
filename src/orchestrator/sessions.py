"""Session Manager for the Orchestrator.

One ConversationOrchestrator per session id, with time-to-live expiry.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.logging import get_logger
from shared.models import utcnow
from orchestrator.gateway import ConversationOrchestrator

logger = get_logger(__name__)

OrchestratorFactory = Callable[[str], ConversationOrchestrator]


class SessionManager:
    """
    Owns the orchestrators of all live sessions.

    Responsibilities:
    - Create and retrieve sessions
    - End sessions, clearing their pending approvals
    - Prune idle sessions
    """

    def __init__(self, factory: OrchestratorFactory, session_ttl_minutes: int = 120) -> None:
        """
        Initialize session manager.

        Args:
            factory: Builds the orchestrator for a new session id
            session_ttl_minutes: Idle time after which a session expires
        """
        self.factory = factory
        self.ttl = timedelta(minutes=session_ttl_minutes)

        self._sessions: dict[str, ConversationOrchestrator] = {}
        self._last_seen: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self) -> ConversationOrchestrator:
        session_id = str(uuid.uuid4())
        orchestrator = self.factory(session_id)

        async with self._lock:
            self._sessions[session_id] = orchestrator
            self._last_seen[session_id] = utcnow()

        logger.info("Session created", session_id=session_id)
        return orchestrator

    def get(self, session_id: str) -> Optional[ConversationOrchestrator]:
        """
        Get a session by ID.

        Returns:
            The session's orchestrator, or None if unknown
        """
        orchestrator = self._sessions.get(session_id)
        if orchestrator is not None:
            self._last_seen[session_id] = utcnow()
        return orchestrator

    async def delete(self, session_id: str) -> bool:
        """
        End a session.

        Returns:
            True if deleted, False if not found
        """
        async with self._lock:
            orchestrator = self._sessions.pop(session_id, None)
            self._last_seen.pop(session_id, None)

        if orchestrator is None:
            return False

        await orchestrator.clear_conversation()
        logger.info("Session deleted", session_id=session_id)
        return True

    async def cleanup_expired(self) -> int:
        """
        Remove idle sessions.

        Sessions with a turn in flight (including one waiting on an
        approval) are kept.

        Returns:
            Number of sessions removed
        """
        now = utcnow()
        expired = [
            session_id
            for session_id, seen in self._last_seen.items()
            if now - seen > self.ttl and not self._sessions[session_id].state.is_processing
        ]

        for session_id in expired:
            await self.delete(session_id)

        if expired:
            logger.info("Expired sessions cleaned up", count=len(expired))
        return len(expired)

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.delete(session_id)

