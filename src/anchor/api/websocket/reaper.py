"""
Idle session reaper.

Periodically reclaims sessions whose last activity is older than the idle
threshold. Sessions with a turn in flight are never reclaimed, however stale.
"""

from __future__ import annotations

import asyncio
import contextlib

from typing import Any

from anchor.api.websocket.errors import IDLE_TIMEOUT_REASON, WSCloseCode
from anchor.api.websocket.registry import SessionRegistry
from anchor.core.constants import DEFAULT_IDLE_TIMEOUT, DEFAULT_SWEEP_INTERVAL
from anchor.integrations.completion_engine import CompletionEngine
from anchor.utils.logger import logger
from anchor.utils.metrics import sessions_reclaimed_total


class IdleReaper:
    """Background sweep reclaiming abandoned sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        engine: CompletionEngine | None = None,
        idle_threshold: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        """Initialize the reaper.

        Args:
            registry: Session registry to sweep
            engine: Completion engine asked to release reclaimed sessions
            idle_threshold: Reclaim sessions idle longer than this (seconds)
            sweep_interval: Time between sweeps (seconds)
        """
        self.registry = registry
        self.engine = engine
        self.idle_threshold = idle_threshold
        self.sweep_interval = sweep_interval
        self._task: asyncio.Task[None] | None = None
        self.total_reclaimed = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info(
                f"Idle reaper started (threshold: {self.idle_threshold}s, interval: {self.sweep_interval}s)"
            )

    async def stop(self) -> None:
        """Stop the periodic sweep task."""
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Idle reaper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Idle sweep failed: {e}", exc_info=True)

    async def sweep(self, now: float | None = None) -> int:
        """Reclaim every idle session older than the threshold.

        Returns:
            Number of sessions reclaimed
        """
        if now is None:
            now = self.registry.now()
        idle_before = now - self.idle_threshold

        reclaimed = 0
        for session_id in self.registry.all_idle_older_than(self.idle_threshold, now):
            try:
                if await self._reclaim(session_id, idle_before):
                    reclaimed += 1
            except Exception as e:
                logger.error(f"Failed to reclaim session: {e}", exc_info=True, session_id=session_id)

        if reclaimed:
            self.total_reclaimed += reclaimed
            sessions_reclaimed_total.inc(reclaimed)
            logger.info(f"Reclaimed {reclaimed} idle session(s)")
        return reclaimed

    async def _reclaim(self, session_id: str, idle_before: float) -> bool:
        # Guarded removal: a turn or frame that landed since the query keeps the session
        websocket = await self.registry.remove(session_id, idle_before=idle_before)
        if websocket is None:
            return False

        try:
            await websocket.close(code=WSCloseCode.IDLE_TIMEOUT, reason=IDLE_TIMEOUT_REASON)
        except Exception as e:
            logger.warning(f"Idle session socket already closed: {e}", session_id=session_id)

        if self.engine is not None:
            try:
                await self.engine.release_session(session_id)
            except Exception as e:
                logger.error(f"Failed to release engine session: {e}", exc_info=True, session_id=session_id)

        logger.debug("Idle session reclaimed", session_id=session_id)
        return True

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "idle_threshold": self.idle_threshold,
            "sweep_interval": self.sweep_interval,
            "total_reclaimed": self.total_reclaimed,
        }


__all__ = ["IdleReaper"]
