"""WebSocket session layer for Anchor.

Provides the session registry, cancellation tokens, and error utilities.
The protocol handler and idle reaper live in their own modules.
"""

from __future__ import annotations

from anchor.api.websocket.errors import (
    WSCloseCode,
    close_quietly,
    send_ws_error,
)
from anchor.api.websocket.registry import Session, SessionIdCollisionError, SessionRegistry, SessionState
from anchor.api.websocket.task_manager import CancellationToken

__all__ = [
    # Task cancellation
    "CancellationToken",
    # Error handling
    "WSCloseCode",
    "close_quietly",
    "send_ws_error",
    # Session management
    "Session",
    "SessionIdCollisionError",
    "SessionRegistry",
    "SessionState",
]
