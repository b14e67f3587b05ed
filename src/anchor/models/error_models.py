"""
Standardized error models for Anchor.

Provides consistent error formatting for WebSocket frames and the
HTTP error responses of the health surface.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ErrorCode(str, Enum):
    """Application-specific error codes for categorization."""

    # WebSocket protocol errors (6xxx)
    WS_MESSAGE_INVALID = "WS_6002"
    WS_CONVERSATION_NOT_BOUND = "WS_6003"
    WS_TURN_IN_PROGRESS = "WS_6006"

    # Completion engine errors (7xxx)
    ENGINE_ERROR = "EXT_7001"
    ENGINE_NOT_READY = "EXT_7002"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "INT_9001"


class ErrorFrame(BaseModel):
    """Error frame sent over WebSocket connections.

    Example:
    {
        "type": "error",
        "code": "WS_6003",
        "message": "No conversation bound to this session",
        "sessionId": "ses_a1b2c3d4e5f6a7b8",
        "recoverable": true
    }
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Literal["error"] = "error"
    code: ErrorCode
    message: str
    session_id: str | None = None
    recoverable: bool = True  # Hint to client that the connection stays usable
    details: dict[str, Any] | None = Field(default=None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for WebSocket JSON message."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "ErrorCode",
    "ErrorFrame",
]
