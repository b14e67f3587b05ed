"""
Per-connection protocol handler for the ``/ws`` endpoint.

One ``ProtocolHandler`` drives one socket for its whole lifetime and is bound
to a single session id. It translates inbound frames into completion engine
calls and serializes engine output back as frames:

    accepted -> bound -> streaming -> idle -> bound ... -> closed

At most one turn runs per connection, as a background task, so ``cancel`` and
``ping`` frames keep being processed while a response streams.
"""

from __future__ import annotations

import asyncio
import contextlib

from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from anchor.api.middleware.request_context import update_request_context
from anchor.api.websocket.errors import WSCloseCode, close_quietly, send_ws_error
from anchor.api.websocket.registry import SessionLimitError, SessionRegistry
from anchor.api.websocket.task_manager import CancellationToken
from anchor.core.constants import DEFAULT_MAX_FRAME_BYTES, DEFAULT_TURN_CANCEL_GRACE
from anchor.integrations.completion_engine import CompletionEngine, EngineNotInitializedError
from anchor.models.error_models import ErrorCode
from anchor.models.frames import (
    CancelFrame,
    InvalidFrameError,
    MessageCancelledFrame,
    MessageDeltaFrame,
    MessageDoneFrame,
    PingFrame,
    PongFrame,
    SessionIdleFrame,
    StartTurnFrame,
    parse_client_frame,
)
from anchor.utils.logger import logger, preview
from anchor.utils.metrics import turns_total, ws_connections_total, ws_frames_total

TURN_DONE = "done"
TURN_CANCELLED = "cancelled"
TURN_ERROR = "error"


def _is_open(websocket: WebSocket) -> bool:
    """False once either side of the socket has closed."""
    return all(
        getattr(websocket, attr, None) != WebSocketState.DISCONNECTED for attr in ("client_state", "application_state")
    )


def _is_disconnect_error(websocket: WebSocket, error: RuntimeError) -> bool:
    """Starlette raises RuntimeError for sends and receives on a socket that is already gone."""
    if not _is_open(websocket):
        return True
    message = str(error).lower()
    return "not connected" in message or "close message has been sent" in message


class ProtocolHandler:
    """Terminates the real-time protocol for one WebSocket connection."""

    def __init__(
        self,
        websocket: WebSocket,
        registry: SessionRegistry,
        engine: CompletionEngine,
        conversation_id: str | None = None,
        turn_cancel_grace: float = DEFAULT_TURN_CANCEL_GRACE,
        max_connections: int | None = None,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ):
        """Initialize the handler.

        Args:
            websocket: Socket to serve (not yet accepted)
            registry: Shared session registry
            engine: Completion engine used for turns
            conversation_id: Conversation to bind at connect time, if any
            turn_cancel_grace: Time a cancelled turn gets before its task is force-cancelled
            max_connections: Refuse the socket when this many sessions are registered
            max_frame_bytes: Larger inbound frames are rejected as invalid
        """
        self.websocket = websocket
        self.registry = registry
        self.engine = engine
        self.initial_conversation_id = conversation_id
        self.turn_cancel_grace = turn_cancel_grace
        self.max_connections = max_connections
        self.max_frame_bytes = max_frame_bytes

        self.session_id: str | None = None
        self._send_lock = asyncio.Lock()
        self._turn_task: asyncio.Task[str] | None = None
        self._turn_token: CancellationToken | None = None
        self._closed = False

    @property
    def turn_active(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    async def run(self) -> None:
        """Serve the connection until the peer goes away."""
        # Accept first so a refusal can still deliver a proper close code
        await self.websocket.accept()
        try:
            self.session_id = await self.registry.register(
                self.websocket, self.initial_conversation_id, max_sessions=self.max_connections
            )
        except SessionLimitError as e:
            logger.warning(f"WebSocket refused: {e}")
            await close_quietly(
                self.websocket,
                code=WSCloseCode.SERVICE_UNAVAILABLE,
                reason="Service unavailable - connection limit reached",
            )
            return

        update_request_context(session_id=self.session_id)
        ws_connections_total.inc()

        try:
            await self.send(SessionIdleFrame(session_id=self.session_id).to_dict())
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket closed by client (code: {message.get('code')})")
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.handle_frame(raw)
        except WebSocketDisconnect:
            pass  # Normal client disconnect
        except RuntimeError as e:
            if not _is_disconnect_error(self.websocket, e):
                raise
            logger.info(f"WebSocket closed underneath the session: {e}")
        finally:
            await self.close()

    async def send(self, payload: dict[str, Any]) -> None:
        """Send one frame; all sends on this socket are serialized."""
        async with self._send_lock:
            await self.websocket.send_json(payload)
        ws_frames_total.labels(direction="outbound").inc()

    async def send_error(self, code: ErrorCode, message: str, recoverable: bool = True) -> None:
        async with self._send_lock:
            await send_ws_error(self.websocket, code, message, session_id=self.session_id, recoverable=recoverable)
        ws_frames_total.labels(direction="outbound").inc()

    async def handle_frame(self, raw: str | bytes) -> None:
        """Dispatch one inbound frame. Protocol violations never close the connection."""
        ws_frames_total.labels(direction="inbound").inc()
        if self.session_id is not None:
            await self.registry.touch(self.session_id)

        size = len(raw.encode()) if isinstance(raw, str) else len(raw)
        if size > self.max_frame_bytes:
            await self.send_error(ErrorCode.WS_MESSAGE_INVALID, f"Frame exceeds {self.max_frame_bytes} bytes")
            return

        try:
            frame = parse_client_frame(raw)
        except InvalidFrameError as e:
            logger.debug(f"Invalid frame: {e}")
            await self.send_error(ErrorCode.WS_MESSAGE_INVALID, f"Invalid frame: {e}")
            return

        if isinstance(frame, PingFrame):
            await self.send(PongFrame().to_dict())
        elif isinstance(frame, StartTurnFrame):
            await self.start_turn(frame)
        elif isinstance(frame, CancelFrame):
            await self.cancel_turn(reason="Client cancel")

    async def start_turn(self, frame: StartTurnFrame) -> None:
        """Bind the frame's conversation and launch a turn in the background."""
        session_id = self.session_id
        if session_id is None:
            return

        if self.turn_active:
            await self.send_error(ErrorCode.WS_TURN_IN_PROGRESS, "A turn is already streaming on this session")
            return

        if frame.conversation_id:
            await self.registry.bind(session_id, frame.conversation_id)
            update_request_context(conversation_id=frame.conversation_id)
            peers = self.registry.sessions_for_conversation(frame.conversation_id)
            logger.debug(f"Conversation bound (sessions on conversation: {len(peers)})")

        session = self.registry.get(session_id)
        conversation_id = session.conversation_id if session else None
        if conversation_id is None:
            await self.send_error(ErrorCode.WS_CONVERSATION_NOT_BOUND, "No conversation bound to this session")
            return

        await self.registry.mark_streaming(session_id)
        logger.info(f"Turn requested: {preview(frame.input)}", conversation_id=conversation_id)

        token = CancellationToken()
        self._turn_token = token
        self._turn_task = asyncio.create_task(self._run_turn(session_id, conversation_id, frame.input, token))

    async def _run_turn(self, session_id: str, conversation_id: str, text: str, token: CancellationToken) -> str:
        """Relay engine output as frames (runs as background task)."""
        outcome = TURN_CANCELLED
        try:
            async with contextlib.aclosing(self.engine.start_turn(session_id, conversation_id, text, token)) as stream:
                async for chunk in stream:
                    if token.is_cancelled:
                        break
                    await self.send(MessageDeltaFrame(chunk=chunk).to_dict())
                    await self.registry.touch(session_id)

            if not token.is_cancelled:
                outcome = TURN_DONE
                await self.send(MessageDoneFrame().to_dict())
        except asyncio.CancelledError:
            raise  # Let cancellation propagate
        except Exception as e:
            if token.is_cancelled:
                return outcome
            if isinstance(e, RuntimeError) and _is_disconnect_error(self.websocket, e):
                logger.info("Turn stopped: connection closed", conversation_id=conversation_id)
                return outcome
            outcome = TURN_ERROR
            logger.error(f"Turn failed: {e}", exc_info=True, conversation_id=conversation_id)
            code = ErrorCode.ENGINE_NOT_READY if isinstance(e, EngineNotInitializedError) else ErrorCode.ENGINE_ERROR
            await self.send_error(code, f"Turn failed: {type(e).__name__}")
        finally:
            # Cancelled turns are settled by cancel_turn or connection cleanup
            if outcome != TURN_CANCELLED:
                await self.registry.mark_idle(session_id)
                turns_total.labels(outcome=outcome).inc()
        return outcome

    async def cancel_turn(self, reason: str = "Client cancel") -> bool:
        """Cancel the streaming turn, if any.

        Returns:
            True if a turn was cancelled and ``message:cancelled`` sent
        """
        task = self._turn_task
        token = self._turn_token
        if task is None or token is None or task.done():
            logger.debug("Cancel ignored: no turn in progress")
            return False

        token.cancel(reason=reason)
        try:
            await self.engine.cancel_turn(self.session_id or "")
        except Exception as e:
            logger.warning(f"Engine cancel failed: {e}")

        done, _ = await asyncio.wait({task}, timeout=self.turn_cancel_grace)
        if not done:
            logger.warning(f"Turn did not stop within {self.turn_cancel_grace}s, cancelling task")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        elif not task.cancelled() and task.result() != TURN_CANCELLED:
            # The turn reached its terminal frame before the cancel took effect
            return False

        await self.send(MessageCancelledFrame().to_dict())
        if self.session_id is not None:
            await self.registry.mark_idle(self.session_id)
        turns_total.labels(outcome=TURN_CANCELLED).inc()
        logger.info("Turn cancelled")
        return True

    async def close(self) -> None:
        """Cancel any running turn, release the session and close the socket."""
        if self._closed:
            return
        self._closed = True

        task = self._turn_task
        if task is not None and not task.done():
            if self._turn_token is not None:
                self._turn_token.cancel(reason="Connection closing")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self.session_id is None:
            return

        try:
            await self.engine.release_session(self.session_id)
        except Exception as e:
            logger.warning(f"Failed to release engine session: {e}")

        websocket = await self.registry.remove(self.session_id)
        if websocket is not None and _is_open(websocket):
            await close_quietly(websocket, code=WSCloseCode.NORMAL)
        logger.info(f"Session closed (remaining: {len(self.registry)})")


__all__ = ["ProtocolHandler"]
