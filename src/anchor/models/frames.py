"""
WebSocket frame models for the Anchor real-time protocol.

Every frame is a JSON object with a ``type`` discriminator and camelCase keys.

Client -> server:
    start_turn {conversationId, input}, cancel {}, ping {}

Server -> client:
    session:idle {sessionId}, message:delta {chunk}, message:done {},
    message:cancelled {}, error {code, message}, pong {}
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class Frame(BaseModel):
    """Base class for protocol frames (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for WebSocket JSON message."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# Client -> Server
# ============================================================================


class StartTurnFrame(Frame):
    """Start a conversation turn; ``conversationId`` binds the session."""

    type: Literal["start_turn"] = "start_turn"
    conversation_id: str | None = Field(default=None, min_length=1)
    input: str = Field(..., min_length=1)


class CancelFrame(Frame):
    """Cancel the turn currently streaming on this session."""

    type: Literal["cancel"] = "cancel"


class PingFrame(Frame):
    """Application-level keep-alive."""

    type: Literal["ping"] = "ping"


ClientFrame = Annotated[StartTurnFrame | CancelFrame | PingFrame, Field(discriminator="type")]

_client_frame_adapter: TypeAdapter[StartTurnFrame | CancelFrame | PingFrame] = TypeAdapter(ClientFrame)


class InvalidFrameError(ValueError):
    """Raised when an inbound frame is not valid JSON or not a known frame."""


def parse_client_frame(raw: str | bytes) -> StartTurnFrame | CancelFrame | PingFrame:
    """Validate a raw inbound frame.

    Raises:
        InvalidFrameError: With a short description of the first problem found.
    """
    try:
        return _client_frame_adapter.validate_json(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        reason = first.get("msg", "invalid frame")
        raise InvalidFrameError(f"{location}: {reason}" if location else reason) from e


# ============================================================================
# Server -> Client
# ============================================================================


class SessionIdleFrame(Frame):
    """Connection confirmation carrying the assigned session id."""

    type: Literal["session:idle"] = "session:idle"
    session_id: str


class MessageDeltaFrame(Frame):
    """One streamed response fragment."""

    type: Literal["message:delta"] = "message:delta"
    chunk: str


class MessageDoneFrame(Frame):
    type: Literal["message:done"] = "message:done"


class MessageCancelledFrame(Frame):
    type: Literal["message:cancelled"] = "message:cancelled"


class PongFrame(Frame):
    type: Literal["pong"] = "pong"


__all__ = [
    "CancelFrame",
    "ClientFrame",
    "Frame",
    "InvalidFrameError",
    "MessageCancelledFrame",
    "MessageDeltaFrame",
    "MessageDoneFrame",
    "PingFrame",
    "PongFrame",
    "SessionIdleFrame",
    "StartTurnFrame",
    "parse_client_frame",
]
