"""Tests for the idle reaper."""

from __future__ import annotations

import asyncio

from unittest.mock import AsyncMock, Mock, patch

import pytest

from anchor.api.websocket.errors import IDLE_TIMEOUT_REASON, WSCloseCode
from anchor.api.websocket.reaper import IdleReaper
from anchor.api.websocket.registry import SessionRegistry

from tests.conftest import FakeClock, FakeEngine

TEN_MINUTES = 600.0
FIFTEEN_MINUTES = 900.0


def _socket() -> Mock:
    ws = Mock()
    ws.close = AsyncMock()
    return ws


@pytest.fixture
def registry(clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(clock=clock)


@pytest.fixture
def reaper(registry: SessionRegistry, engine: FakeEngine) -> IdleReaper:
    return IdleReaper(registry, engine=engine, idle_threshold=TEN_MINUTES, sweep_interval=TEN_MINUTES)


class TestSweep:
    """Tests for a single sweep."""

    @pytest.mark.asyncio
    async def test_reclaims_stale_idle_but_not_streaming(
        self, reaper: IdleReaper, registry: SessionRegistry, engine: FakeEngine, clock: FakeClock
    ) -> None:
        """Idle and streaming sessions both untouched for 15 min: only the idle one goes."""
        idle_ws, streaming_ws = _socket(), _socket()
        idle_id = await registry.register(idle_ws)
        streaming_id = await registry.register(streaming_ws)
        await registry.mark_streaming(streaming_id)
        clock.advance(FIFTEEN_MINUTES)

        reclaimed = await reaper.sweep()

        assert reclaimed == 1
        assert idle_id not in registry
        assert streaming_id in registry
        idle_ws.close.assert_awaited_once_with(code=WSCloseCode.IDLE_TIMEOUT, reason=IDLE_TIMEOUT_REASON)
        streaming_ws.close.assert_not_awaited()
        assert engine.released == [idle_id]

    @pytest.mark.asyncio
    async def test_recent_sessions_survive(
        self, reaper: IdleReaper, registry: SessionRegistry, clock: FakeClock
    ) -> None:
        ws = _socket()
        session_id = await registry.register(ws)
        clock.advance(TEN_MINUTES - 1)

        assert await reaper.sweep() == 0
        assert session_id in registry
        ws.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_now(self, reaper: IdleReaper, registry: SessionRegistry, clock: FakeClock) -> None:
        session_id = await registry.register(_socket())

        assert await reaper.sweep(now=clock.now + FIFTEEN_MINUTES) == 1
        assert session_id not in registry

    @pytest.mark.asyncio
    async def test_closed_socket_does_not_abort_sweep(
        self, reaper: IdleReaper, registry: SessionRegistry, engine: FakeEngine, clock: FakeClock
    ) -> None:
        """A socket that is already gone is logged and the other sessions are still reclaimed."""
        broken = _socket()
        broken.close.side_effect = RuntimeError("Cannot call send once a close message has been sent")
        broken_id = await registry.register(broken)
        healthy = _socket()
        healthy_id = await registry.register(healthy)
        clock.advance(FIFTEEN_MINUTES)

        assert await reaper.sweep() == 2
        assert broken_id not in registry
        assert healthy_id not in registry
        healthy.close.assert_awaited_once()
        assert set(engine.released) == {broken_id, healthy_id}

    @pytest.mark.asyncio
    async def test_engine_release_failure_is_isolated(
        self, registry: SessionRegistry, clock: FakeClock
    ) -> None:
        engine = Mock()
        engine.release_session = AsyncMock(side_effect=[RuntimeError("engine down"), None])
        reaper = IdleReaper(registry, engine=engine, idle_threshold=TEN_MINUTES)
        first = await registry.register(_socket())
        second = await registry.register(_socket())
        clock.advance(FIFTEEN_MINUTES)

        assert await reaper.sweep() == 2
        assert first not in registry
        assert second not in registry
        assert engine.release_session.await_count == 2

    @pytest.mark.asyncio
    async def test_zero_reclaimed_is_not_logged(self, reaper: IdleReaper) -> None:
        with patch("anchor.api.websocket.reaper.logger") as mock_logger:
            assert await reaper.sweep() == 0

        mock_logger.info.assert_not_called()

    @pytest.mark.asyncio
    async def test_positive_count_is_logged(
        self, reaper: IdleReaper, registry: SessionRegistry, clock: FakeClock
    ) -> None:
        await registry.register(_socket())
        clock.advance(FIFTEEN_MINUTES)

        with patch("anchor.api.websocket.reaper.logger") as mock_logger:
            await reaper.sweep()

        mock_logger.info.assert_called_once()
        assert "Reclaimed 1" in mock_logger.info.call_args[0][0]
        assert reaper.total_reclaimed == 1

    @pytest.mark.asyncio
    async def test_touched_between_query_and_remove_is_kept(
        self, reaper: IdleReaper, registry: SessionRegistry, clock: FakeClock
    ) -> None:
        """The guarded removal re-checks activity atomically."""
        ws = _socket()
        session_id = await registry.register(ws)
        clock.advance(FIFTEEN_MINUTES)
        sweep_now = clock.now

        original_query = registry.all_idle_older_than

        def query_then_touch(threshold: float, now: float | None = None) -> set[str]:
            result = original_query(threshold, now)
            registry._sessions[session_id].last_activity_at = clock.now + 1
            return result

        registry.all_idle_older_than = query_then_touch  # type: ignore[method-assign]

        assert await reaper.sweep(now=sweep_now) == 0
        assert session_id in registry
        ws.close.assert_not_awaited()


class TestLifecycle:
    """Tests for the periodic task."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry: SessionRegistry) -> None:
        reaper = IdleReaper(registry, idle_threshold=TEN_MINUTES, sweep_interval=0.01)

        await reaper.start()
        assert reaper.is_running
        await reaper.stop()

        assert not reaper.is_running
        assert reaper.get_stats()["running"] is False

    @pytest.mark.asyncio
    async def test_loop_survives_sweep_failure(self, registry: SessionRegistry) -> None:
        reaper = IdleReaper(registry, idle_threshold=TEN_MINUTES, sweep_interval=0.01)
        calls = 0

        async def failing_sweep(now: float | None = None) -> int:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        reaper.sweep = failing_sweep  # type: ignore[method-assign]
        await reaper.start()
        await asyncio.sleep(0.1)

        assert reaper.is_running
        assert calls >= 2
        await reaper.stop()
