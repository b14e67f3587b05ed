"""
WebSocket error handling utilities for Anchor.

Provides close codes and a send helper that never raises, so a protocol
or turn failure is always reported as a frame and never tears down the
connection handler.
"""

from __future__ import annotations

import contextlib

from typing import Any

from fastapi import WebSocket

from anchor.models.error_models import ErrorCode, ErrorFrame
from anchor.utils.logger import logger


# WebSocket close codes (RFC 6455 + application-specific)
class WSCloseCode:
    """WebSocket close codes used by the session layer."""

    # Standard codes
    NORMAL = 1000
    GOING_AWAY = 1001
    INTERNAL_ERROR = 1011

    # Application-specific codes (4000-4999)
    IDLE_TIMEOUT = 4000
    SERVICE_UNAVAILABLE = 4503


IDLE_TIMEOUT_REASON = "Idle timeout"
SHUTDOWN_REASON = "Server shutdown"


def build_error_frame(
    code: ErrorCode,
    message: str,
    session_id: str | None = None,
    recoverable: bool = True,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the wire dictionary for an ``error`` frame."""
    return ErrorFrame(
        code=code,
        message=message,
        session_id=session_id,
        recoverable=recoverable,
        details=details,
    ).to_dict()


async def send_ws_error(
    websocket: WebSocket,
    code: ErrorCode,
    message: str,
    session_id: str | None = None,
    recoverable: bool = True,
    details: dict[str, Any] | None = None,
) -> None:
    """Send a standardized error frame over WebSocket.

    Args:
        websocket: Active WebSocket connection
        code: Application error code
        message: Human-readable error message
        session_id: Associated session ID (if any)
        recoverable: Whether the connection stays usable
        details: Additional error context
    """
    try:
        await websocket.send_json(build_error_frame(code, message, session_id, recoverable, details))
    except Exception as e:
        # Connection may already be closed
        logger.warning(f"Failed to send WebSocket error: {e}")


async def close_quietly(websocket: WebSocket, code: int = WSCloseCode.NORMAL, reason: str = "") -> bool:
    """Close a socket, ignoring errors from an already-closed transport.

    Returns:
        True if the close frame was sent, False if the socket was already gone.
    """
    with contextlib.suppress(Exception):
        await websocket.close(code=code, reason=reason)
        return True
    return False


__all__ = [
    "IDLE_TIMEOUT_REASON",
    "SHUTDOWN_REASON",
    "WSCloseCode",
    "build_error_frame",
    "close_quietly",
    "send_ws_error",
]
