"""Shared test fixtures for the Anchor test suite.

Provides a scripted completion engine, an in-memory server-side WebSocket,
a controllable clock and validated settings, so tests never touch the network.
"""

from __future__ import annotations

import asyncio
import json

from collections.abc import AsyncGenerator, Generator
from typing import Any
from unittest.mock import AsyncMock

import pytest

from starlette.websockets import WebSocketState

from anchor.api.middleware.request_context import clear_request_context
from anchor.api.websocket.task_manager import CancellationToken
from anchor.core.constants import Settings, clear_settings_cache
from anchor.integrations.completion_engine import CompletionEngine, CompletionEngineError

TEST_API_KEY = "sk-test-0123456789"


# ============================================================================
# Test Isolation
# ============================================================================


@pytest.fixture(autouse=True)
def isolate_settings_and_context() -> Generator[None, None, None]:
    """Clear cached settings and connection context between tests."""
    clear_settings_cache()
    clear_request_context()
    yield
    clear_settings_cache()
    clear_request_context()


@pytest.fixture
def settings() -> Settings:
    """Valid settings for the openai provider with fast timers."""
    return Settings(
        app_env="test",
        openai_api_key=TEST_API_KEY,
        ws_turn_cancel_grace=0.2,
        shutdown_connection_drain_timeout=1.0,
    )


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 10_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Completion Engine
# ============================================================================


class FakeEngine(CompletionEngine):
    """Scripted completion engine.

    Yields ``chunks`` for every turn. With ``block=True`` the turn waits after
    the first chunk until it is cancelled; with ``fail_after`` set the turn
    raises CompletionEngineError after that many chunks.
    """

    def __init__(
        self,
        chunks: list[str] | None = None,
        block: bool = False,
        fail_after: int | None = None,
        ignore_cancel: bool = False,
    ):
        self.chunks = chunks if chunks is not None else ["Hel", "lo"]
        self.block = block
        self.fail_after = fail_after
        self.ignore_cancel = ignore_cancel
        self.initialized = False
        self.turns: list[tuple[str, str, str]] = []
        self.cancelled: list[str] = []
        self.released: list[str] = []
        self.shutdown_called = False
        self._tokens: dict[str, CancellationToken] = {}

    @property
    def is_initialized(self) -> bool:
        return self.initialized

    async def initialize(self) -> None:
        self.initialized = True

    async def start_turn(
        self,
        session_id: str,
        conversation_id: str,
        text: str,
        token: CancellationToken | None = None,
    ) -> AsyncGenerator[str, None]:
        self.turns.append((session_id, conversation_id, text))
        token = token or CancellationToken()
        self._tokens[session_id] = token

        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise CompletionEngineError("backend exploded")
            if token.is_cancelled:
                return
            yield chunk
            await asyncio.sleep(0)

        if self.block:
            if self.ignore_cancel:
                await asyncio.Event().wait()
            while not token.is_cancelled:
                await asyncio.sleep(0.001)

    async def cancel_turn(self, session_id: str) -> bool:
        self.cancelled.append(session_id)
        token = self._tokens.get(session_id)
        if token is None:
            return False
        if not self.ignore_cancel:
            token.cancel(reason="engine cancel")
        return True

    async def release_session(self, session_id: str) -> None:
        self.released.append(session_id)

    async def shutdown(self) -> None:
        self.shutdown_called = True
        self.initialized = False

    def get_stats(self) -> dict[str, Any]:
        return {"initialized": self.initialized, "provider": "fake", "active_turns": 0}


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


# ============================================================================
# Server-side WebSocket
# ============================================================================


class FakeWebSocket:
    """In-memory stand-in for a Starlette WebSocket.

    Tests push client frames with ``push`` / ``push_disconnect`` and inspect
    ``sent`` for every JSON frame the server emitted.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.accept = AsyncMock()
        self.close = AsyncMock(side_effect=self._on_close)
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self._inbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._sent_event = asyncio.Event()

    async def _on_close(self, code: int = 1000, reason: str | None = None) -> None:
        self.application_state = WebSocketState.DISCONNECTED

    def push(self, frame: dict[str, Any] | str) -> None:
        text = frame if isinstance(frame, str) else json.dumps(frame)
        self._inbound.put_nowait({"type": "websocket.receive", "text": text})

    def push_disconnect(self, code: int = 1000) -> None:
        self._inbound.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict[str, Any]:
        message = await self._inbound.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)
        self._sent_event.set()

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    async def wait_for(self, frame_type: str, timeout: float = 2.0) -> dict[str, Any]:
        """Wait until a frame of ``frame_type`` has been sent and return it."""

        async def _wait() -> dict[str, Any]:
            while True:
                for frame in self.sent:
                    if frame["type"] == frame_type:
                        return frame
                self._sent_event.clear()
                await self._sent_event.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    return FakeWebSocket()
