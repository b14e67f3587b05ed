"""
Client-side connection state machine for the ``/ws`` protocol.

One ``ConnectionStateMachine`` drives one logical connection::

    disconnected --connect()--> connecting --session:idle--> connected
    connecting/connected --socket lost--> reconnecting(n) --delay--> connecting
    reconnecting(n > max_attempts) --> disconnected (gave_up)
    any --disconnect()--> disconnected

The connection only counts as ``connected`` once the server's ``session:idle``
frame arrives on the current socket. Connection failures never raise into the
caller; they are observable through ``state``, ``attempt_number``,
``on_state_change`` and ``wait_for_state()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import websockets

from anchor.core.constants import (
    DEFAULT_CANCEL_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_KEEPALIVE_INTERVAL,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_PONG_TIMEOUT,
    DEFAULT_RECONNECT_BASE_DELAY,
    DEFAULT_RECONNECT_MAX_DELAY,
    DEFAULT_RECONNECT_MULTIPLIER,
    FRAME_CANCEL,
    FRAME_ERROR,
    FRAME_MESSAGE_CANCELLED,
    FRAME_PING,
    FRAME_PONG,
    FRAME_SESSION_IDLE,
    FRAME_START_TURN,
    TURN_TERMINAL_FRAMES,
    WS_CONVERSATION_QUERY_PARAM,
    WS_ENDPOINT_PATH,
)
from anchor.models.error_models import ErrorCode
from anchor.utils.logger import logger

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from anchor.core.constants import Settings


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


Connector = Callable[[str], Awaitable["ClientConnection"]]
StateCallback = Callable[[ConnectionState, int], None]
FrameCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff: 2, 4, 8, 16, 32 s with the defaults."""

    base_delay: float = DEFAULT_RECONNECT_BASE_DELAY
    multiplier: float = DEFAULT_RECONNECT_MULTIPLIER
    max_delay: float = DEFAULT_RECONNECT_MAX_DELAY
    max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def should_give_up(self, attempt: int) -> bool:
        return attempt > self.max_attempts


class ConnectionStateMachine:
    """Confirmed-connect WebSocket client with keep-alive and reconnection."""

    def __init__(
        self,
        url: str,
        policy: ReconnectPolicy | None = None,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        pong_timeout: float = DEFAULT_PONG_TIMEOUT,
        cancel_timeout: float = DEFAULT_CANCEL_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        on_state_change: StateCallback | None = None,
        on_frame: FrameCallback | None = None,
        connector: Connector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the state machine.

        Args:
            url: WebSocket endpoint, e.g. ``ws://127.0.0.1:3847/ws``
            policy: Reconnection backoff policy
            keepalive_interval: Ping interval while connected (seconds)
            pong_timeout: Missing pong after this long counts as connection loss
            cancel_timeout: Give up waiting for a cancel acknowledgement after this long
            connect_timeout: Transport open timeout
            on_state_change: Called with (state, attempt_number) on every transition
            on_frame: Called with every decoded server frame
            connector: Opens a socket for a URL (defaults to ``websockets.connect``)
            sleep: Coroutine used for reconnect backoff delays
        """
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.keepalive_interval = keepalive_interval
        self.pong_timeout = pong_timeout
        self.cancel_timeout = cancel_timeout
        self.connect_timeout = connect_timeout
        self.on_state_change = on_state_change
        self.on_frame = on_frame
        self._connector = connector or self._default_connector
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self.attempt_number = 0
        self.gave_up = False
        self.conversation_id: str | None = None
        self.session_id: str | None = None
        self.turn_in_flight = False
        self.last_ping_sent_at: float | None = None

        # Bumped whenever the current socket is replaced; stale callbacks compare against it
        self._generation = 0
        self._ws: ClientConnection | None = None
        self._lost: asyncio.Event | None = None
        self._pong_received: asyncio.Event | None = None
        self._supervisor_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._cancel_backstop_task: asyncio.Task[None] | None = None
        self._state_waiters: list[tuple[ConnectionState, asyncio.Future[None]]] = []

    @classmethod
    def from_settings(cls, settings: Settings, url: str | None = None, **kwargs: Any) -> ConnectionStateMachine:
        """Build a client using the ``client_*`` settings."""
        policy = ReconnectPolicy(
            base_delay=settings.client_reconnect_base_delay,
            multiplier=settings.client_reconnect_multiplier,
            max_delay=settings.client_reconnect_max_delay,
            max_attempts=settings.client_max_reconnect_attempts,
        )
        return cls(
            url or f"ws://{settings.api_host}:{settings.port}{WS_ENDPOINT_PATH}",
            policy=policy,
            keepalive_interval=settings.client_keepalive_interval,
            pong_timeout=settings.client_pong_timeout,
            cancel_timeout=settings.client_cancel_timeout,
            **kwargs,
        )

    async def _default_connector(self, url: str) -> ClientConnection:
        return await websockets.connect(url, open_timeout=self.connect_timeout)

    # ========================================================================
    # State
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        if state is not ConnectionState.CONNECTED:
            self._stop_keepalive()
            self._end_turn_locally()

        if self.on_state_change is not None:
            try:
                self.on_state_change(state, self.attempt_number)
            except Exception as e:
                logger.error(f"State change callback failed: {e}", exc_info=True)

        for waited, future in self._state_waiters:
            if waited is state and not future.done():
                future.set_result(None)

    async def wait_for_state(self, state: ConnectionState, timeout: float | None = None) -> bool:
        """Wait until the machine enters ``state``.

        Returns:
            True if the state was reached, False on timeout
        """
        if self._state is state:
            return True
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (state, future)
        self._state_waiters.append(entry)
        try:
            await asyncio.wait_for(future, timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._state_waiters.remove(entry)

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def connect(self, conversation_id: str) -> None:
        """Open a session for ``conversation_id``, replacing any existing socket.

        Returns once the attempt is under way; use ``wait_for_state`` to await
        confirmation.
        """
        if conversation_id == self.conversation_id and self.is_connected:
            logger.debug(f"Already connected to conversation {conversation_id}")
            return

        if self._supervisor_task is not None:
            logger.info(f"Switching from conversation {self.conversation_id} to {conversation_id}")
        await self._teardown()

        self.conversation_id = conversation_id
        self.session_id = None
        self.attempt_number = 0
        self.gave_up = False
        self._set_state(ConnectionState.CONNECTING)
        self._supervisor_task = asyncio.create_task(self._supervise(self._generation))

    async def disconnect(self) -> None:
        """Close the connection and stop every timer; no automatic reconnect follows."""
        await self._teardown()
        self.attempt_number = 0
        self.session_id = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected")

    async def _teardown(self) -> None:
        # Invalidate callbacks from the current socket, then wait for it to close
        self._generation += 1
        self._cancel_backstop()
        task = self._supervisor_task
        self._supervisor_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _supervise(self, generation: int) -> None:
        """Connect, serve, and reconnect with backoff until told to stop."""
        while generation == self._generation:
            await self._run_socket(generation)
            if generation != self._generation:
                return

            self.attempt_number += 1
            if self.policy.should_give_up(self.attempt_number):
                logger.warning(f"Giving up after {self.policy.max_attempts} reconnection attempts")
                self.gave_up = True
                self._set_state(ConnectionState.DISCONNECTED)
                self.attempt_number = 0
                return

            delay = self.policy.delay_for(self.attempt_number)
            self._set_state(ConnectionState.RECONNECTING)
            logger.info(f"Reconnecting in {delay}s (attempt {self.attempt_number}/{self.policy.max_attempts})")
            await self._sleep(delay)
            if generation != self._generation:
                return
            self._set_state(ConnectionState.CONNECTING)

    def _url_for(self, conversation_id: str | None) -> str:
        if not conversation_id:
            return self.url
        return f"{self.url}?{urlencode({WS_CONVERSATION_QUERY_PARAM: conversation_id})}"

    async def _run_socket(self, generation: int) -> None:
        """Open one socket and serve it until it is lost."""
        try:
            ws = await self._connector(self._url_for(self.conversation_id))
        except Exception as e:
            logger.warning(f"Connection failed: {e}")
            return

        if generation != self._generation:
            with contextlib.suppress(Exception):
                await ws.close()
            return

        self._ws = ws
        self._lost = asyncio.Event()
        self._pong_received = asyncio.Event()
        reader = asyncio.create_task(self._read_loop(ws, generation, self._lost))
        try:
            await self._lost.wait()
        finally:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
            self._stop_keepalive()
            if self._ws is ws:
                self._ws = None
            with contextlib.suppress(Exception):
                await ws.close()

    async def _read_loop(self, ws: ClientConnection, generation: int, lost: asyncio.Event) -> None:
        try:
            async for raw in ws:
                if generation != self._generation:
                    break
                self._handle_message(raw, generation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Connection lost: {e}")
        finally:
            lost.set()

    def _handle_message(self, raw: str | bytes, generation: int) -> None:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Received invalid JSON frame")
            return
        if not isinstance(frame, dict):
            return

        frame_type = frame.get("type")
        if frame_type == FRAME_SESSION_IDLE:
            if self._state is not ConnectionState.CONNECTED:
                self.session_id = frame.get("sessionId")
                self.attempt_number = 0
                self._set_state(ConnectionState.CONNECTED)
                self._start_keepalive(generation)
                logger.info(f"Session ready (session: {self.session_id}, conversation: {self.conversation_id})")
        elif frame_type == FRAME_PONG:
            if self._pong_received is not None:
                self._pong_received.set()
        elif self._ends_turn(frame):
            self.turn_in_flight = False
            self._cancel_backstop()

        self._emit_frame(frame)

    @staticmethod
    def _ends_turn(frame: dict[str, Any]) -> bool:
        frame_type = frame.get("type")
        if frame_type not in TURN_TERMINAL_FRAMES:
            return False
        # A rejected duplicate start_turn leaves the running turn alive
        return not (frame_type == FRAME_ERROR and frame.get("code") == ErrorCode.WS_TURN_IN_PROGRESS.value)

    def _emit_frame(self, frame: dict[str, Any]) -> None:
        if self.on_frame is None:
            return
        try:
            self.on_frame(frame)
        except Exception as e:
            logger.error(f"Frame callback failed: {e}", exc_info=True)

    # ========================================================================
    # Keep-alive
    # ========================================================================

    def _start_keepalive(self, generation: int) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive(generation))

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _keepalive(self, generation: int) -> None:
        """Ping while connected; a missing pong counts as connection loss."""
        while generation == self._generation:
            await asyncio.sleep(self.keepalive_interval)
            ws, lost, pong = self._ws, self._lost, self._pong_received
            if generation != self._generation or ws is None or lost is None or pong is None:
                return

            pong.clear()
            self.last_ping_sent_at = time.monotonic()
            try:
                await ws.send(json.dumps({"type": FRAME_PING}))
            except Exception as e:
                logger.warning(f"Ping failed: {e}")
                lost.set()
                return

            try:
                await asyncio.wait_for(pong.wait(), timeout=self.pong_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"No pong within {self.pong_timeout}s, treating connection as lost")
                lost.set()
                return

    # ========================================================================
    # Turns
    # ========================================================================

    async def send(self, frame: dict[str, Any]) -> bool:
        """Send a frame on the confirmed connection.

        Returns:
            True if the frame was handed to the socket, False otherwise
        """
        ws = self._ws
        if not self.is_connected or ws is None:
            logger.warning(f"Cannot send {frame.get('type')}: not connected")
            return False
        try:
            await ws.send(json.dumps(frame))
            return True
        except Exception as e:
            logger.warning(f"Send failed: {e}")
            return False

    async def start_turn(self, text: str, conversation_id: str | None = None) -> bool:
        """Ask the server to start a turn for the bound (or given) conversation."""
        frame = {
            "type": FRAME_START_TURN,
            "conversationId": conversation_id or self.conversation_id,
            "input": text,
        }
        if not await self.send(frame):
            return False
        self.turn_in_flight = True
        return True

    async def cancel_turn(self) -> bool:
        """Cancel the in-flight turn.

        If the server never acknowledges within ``cancel_timeout``, the turn
        ends locally with a synthetic ``message:cancelled`` frame (``local``).
        """
        if not self.turn_in_flight:
            return False
        await self.send({"type": FRAME_CANCEL})
        self._cancel_backstop()
        self._cancel_backstop_task = asyncio.create_task(self._cancel_backstop_timer(self._generation))
        return True

    async def _cancel_backstop_timer(self, generation: int) -> None:
        await asyncio.sleep(self.cancel_timeout)
        if generation != self._generation or not self.turn_in_flight:
            return
        logger.warning(f"No cancel acknowledgement within {self.cancel_timeout}s, ending turn locally")
        self._cancel_backstop_task = None
        self._end_turn_locally()

    def _cancel_backstop(self) -> None:
        if self._cancel_backstop_task is not None:
            self._cancel_backstop_task.cancel()
            self._cancel_backstop_task = None

    def _end_turn_locally(self) -> None:
        if not self.turn_in_flight:
            return
        self.turn_in_flight = False
        self._cancel_backstop()
        self._emit_frame({"type": FRAME_MESSAGE_CANCELLED, "local": True})


__all__ = [
    "ConnectionState",
    "ConnectionStateMachine",
    "ReconnectPolicy",
]
