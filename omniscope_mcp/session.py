"""Session management for the Omniscope Workflow MCP gateway."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field

from omniscope_mcp.tools.workflow_tools import WorkflowTools

_log = logging.getLogger("omniscope_mcp.session")


@dataclass
class Session:
    """An initialized MCP client bound to its own tool registry."""

    session_id: str
    registry: WorkflowTools
    created_at: float
    last_seen_at: float
    request_count: int = 0
    # Set once the session leaves the table; checked again under the lock.
    closed: bool = False
    # Serialises requests that share a session id.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def touch(self) -> None:
        self.last_seen_at = time.time()
        self.request_count += 1


class SessionManager:
    """Owns the session table: insert, lookup and removal by session id.

    Expired sessions are pruned lazily when requests arrive; no timers or
    background tasks are started.
    """

    def __init__(self, ttl_ms: int = 0) -> None:
        """Initialize session manager.

        Args:
            ttl_ms: Idle time after which a session is dropped (0 keeps sessions until closed)
        """
        self._sessions: dict[str, Session] = {}
        self.ttl_ms = ttl_ms

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(self, registry: WorkflowTools) -> Session:
        """Register a new session with a fresh, previously unseen id."""
        session_id = str(uuid.uuid4())
        while session_id in self._sessions:
            session_id = str(uuid.uuid4())
        now = time.time()
        session = Session(session_id=session_id, registry=registry, created_at=now, last_seen_at=now)
        self._sessions[session_id] = session
        _log.info("session_created session_id=%s", session_id, extra={"session_id": session_id})
        return session

    def get_session(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    async def close_session(self, session_id: str) -> bool:
        """Remove a session and release the resources its registry holds.

        The session is marked closed before waiting for its lock, so requests
        already queued behind an in-flight call see it as unknown. The registry
        is only closed once the in-flight call has finished.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.closed = True
        async with session.lock:
            await session.registry.aclose()
        _log.info(
            "session_closed session_id=%s requests=%d",
            session_id,
            session.request_count,
            extra={"session_id": session_id, "request_count": session.request_count},
        )
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)

    async def prune_expired(self) -> list[str]:
        """Close sessions idle for longer than the TTL."""
        if self.ttl_ms <= 0:
            return []
        now = time.time()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if (now - session.last_seen_at) * 1000 >= self.ttl_ms
        ]
        for session_id in expired:
            await self.close_session(session_id)
        return expired

    def list_session_ids(self, prefix: str = "") -> list[str]:
        """List active session IDs, optionally filtered by prefix."""
        if not prefix:
            return sorted(self._sessions.keys())
        return sorted(session_id for session_id in self._sessions if session_id.startswith(prefix))
