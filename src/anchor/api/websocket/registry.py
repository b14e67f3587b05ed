"""
Session registry for live WebSocket connections.

Maps session ids to their socket, conversation binding, activity time and
streaming state, and indexes sessions by conversation.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import time

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from fastapi import WebSocket

from anchor.core.constants import SESSION_ID_BYTES, SESSION_ID_PREFIX
from anchor.utils.logger import logger
from anchor.utils.metrics import ws_sessions_active


class SessionState(str, Enum):
    """Whether the engine is currently producing a turn for the session."""

    IDLE = "idle"
    STREAMING = "streaming"


class SessionIdCollisionError(RuntimeError):
    """A freshly generated session id already exists in the registry."""


class SessionLimitError(RuntimeError):
    """The registry is draining or already holds its maximum number of sessions."""


@dataclass
class Session:
    """One live real-time session. Owned and mutated only by the registry."""

    id: str
    websocket: WebSocket
    last_activity_at: float
    created_at: float
    conversation_id: str | None = None
    state: SessionState = SessionState.IDLE

    @property
    def is_streaming(self) -> bool:
        return self.state is SessionState.STREAMING


def generate_session_id() -> str:
    """Generate a session id: prefix + 16 hex characters."""
    return f"{SESSION_ID_PREFIX}{secrets.token_hex(SESSION_ID_BYTES)}"


class SessionRegistry:
    """Authoritative map of session id to Session; the single source of truth for liveness.

    All mutations are serialized by one registry-wide lock, so a frame handler
    and a reaper sweep never interleave updates to the same session.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        """Initialize the registry.

        Args:
            clock: Monotonic time source (seconds)
            id_factory: Session id generator
        """
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._id_factory = id_factory
        self._accepting = True
        self._by_conversation: dict[str, set[str]] = {}

    async def register(
        self,
        websocket: WebSocket,
        conversation_id: str | None = None,
        max_sessions: int | None = None,
    ) -> str:
        """Create an idle session for an accepted socket and return its id.

        The limit and shutdown checks happen under the registry lock, so
        concurrent registrations never exceed ``max_sessions``.

        Raises:
            SessionLimitError: If the registry is draining or full
            SessionIdCollisionError: If the generated id is already registered
        """
        async with self._lock:
            if not self._accepting:
                raise SessionLimitError("Registry is not accepting sessions")
            if max_sessions is not None and len(self._sessions) >= max_sessions:
                raise SessionLimitError(f"Session limit reached ({max_sessions})")

            session_id = self._id_factory()
            if session_id in self._sessions:
                raise SessionIdCollisionError(f"Session id collision: {session_id}")

            now = self._clock()
            self._sessions[session_id] = Session(
                id=session_id,
                websocket=websocket,
                last_activity_at=now,
                created_at=now,
                conversation_id=conversation_id,
            )
            if conversation_id is not None:
                self._index(session_id, conversation_id)
            ws_sessions_active.set(len(self._sessions))

        logger.info(f"Session registered (total: {len(self._sessions)})", session_id=session_id)
        return session_id

    async def touch(self, session_id: str) -> None:
        """Update last activity time. Unknown ids are ignored (may race with reclamation)."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity_at = self._clock()

    async def bind(self, session_id: str, conversation_id: str) -> bool:
        """Bind a conversation to the session.

        Returns:
            True if the session exists, False otherwise
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.conversation_id is not None:
                self._unindex(session_id, session.conversation_id)
            session.conversation_id = conversation_id
            self._index(session_id, conversation_id)
            return True

    async def mark_streaming(self, session_id: str) -> bool:
        """Transition to streaming and touch.

        Returns:
            True if the session exists, False otherwise
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.state = SessionState.STREAMING
            session.last_activity_at = self._clock()
            return True

    async def mark_idle(self, session_id: str) -> bool:
        """Transition back to idle.

        Returns:
            True if the session exists, False otherwise
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.state = SessionState.IDLE
            return True

    async def remove(self, session_id: str, idle_before: float | None = None) -> WebSocket | None:
        """Remove a session and return its socket handle for the caller to close.

        Args:
            session_id: Session to remove
            idle_before: When given, only remove if the session is idle and its
                last activity is older than this timestamp (checked atomically)

        Returns:
            The owned socket handle, or None if not found (or no longer reclaimable)
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if idle_before is not None and (session.is_streaming or session.last_activity_at >= idle_before):
                return None
            del self._sessions[session_id]
            if session.conversation_id is not None:
                self._unindex(session_id, session.conversation_id)
            ws_sessions_active.set(len(self._sessions))

        logger.debug(f"Session removed (total: {len(self._sessions)})", session_id=session_id)
        return session.websocket

    @property
    def accepting(self) -> bool:
        """False once shutdown has started; new sockets are refused."""
        return self._accepting

    async def drain(self, code: int, reason: str, timeout: float = 10.0) -> int:
        """Stop accepting sessions, then remove and close every registered one.

        Args:
            code: Close code sent to every client
            reason: Close reason
            timeout: Maximum time to wait for the sockets to close

        Returns:
            Number of sessions drained
        """
        self._accepting = False
        async with self._lock:
            drained = list(self._sessions.values())
            self._sessions.clear()
            self._by_conversation.clear()
            ws_sessions_active.set(0)

        async def close_session(session: Session) -> None:
            with contextlib.suppress(Exception):
                await session.websocket.close(code=code, reason=reason)

        if drained:
            try:
                await asyncio.wait_for(asyncio.gather(*(close_session(s) for s in drained)), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timeout closing {len(drained)} WebSocket sessions")

        logger.info(f"Session registry drained (closed {len(drained)} sessions)")
        return len(drained)

    def all_idle_older_than(self, threshold: float, now: float | None = None) -> set[str]:
        """Ids of idle sessions whose last activity is more than ``threshold`` seconds ago.

        Streaming sessions are never returned, however stale their activity.
        """
        if now is None:
            now = self._clock()
        return {
            session_id
            for session_id, session in self._sessions.items()
            if not session.is_streaming and now - session.last_activity_at > threshold
        }

    def _index(self, session_id: str, conversation_id: str) -> None:
        self._by_conversation.setdefault(conversation_id, set()).add(session_id)

    def _unindex(self, session_id: str, conversation_id: str) -> None:
        ids = self._by_conversation.get(conversation_id)
        if ids is None:
            return
        ids.discard(session_id)
        if not ids:
            del self._by_conversation[conversation_id]

    def sessions_for_conversation(self, conversation_id: str) -> set[str]:
        """Ids of the sessions currently bound to a conversation."""
        return set(self._by_conversation.get(conversation_id, ()))

    def get(self, session_id: str) -> Session | None:
        """Get a session record (read-only use)."""
        return self._sessions.get(session_id)

    def now(self) -> float:
        """Current time on the registry clock."""
        return self._clock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def streaming_count(self) -> int:
        """Number of sessions with a turn in flight."""
        return sum(1 for s in self._sessions.values() if s.is_streaming)

    def get_stats(self) -> dict[str, Any]:
        """Get registry statistics."""
        return {
            "active_sessions": len(self._sessions),
            "streaming_sessions": self.streaming_count,
            "sessions_per_conversation": {cid: len(ids) for cid, ids in self._by_conversation.items()},
        }
