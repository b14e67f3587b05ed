"""
Health check API schemas.

Provides the response model for ``GET /api/health`` with OpenAPI examples.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class EngineHealth(BaseModel):
    """Completion engine health."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "initialized": True,
                "provider": "openai",
                "active_turns": 1,
            }
        }
    )

    initialized: bool = Field(..., description="Engine connected and ready for turns")
    provider: str | None = Field(default=None, description="Configured provider")
    active_turns: int = Field(default=0, ge=0, description="Turns currently streaming")
    error: str | None = Field(default=None, description="Error if unhealthy")


class WebSocketHealth(BaseModel):
    """Session layer health."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "active_sessions": 3,
                "streaming_sessions": 1,
                "reaper_running": True,
                "shutting_down": False,
            }
        }
    )

    active_sessions: int = Field(default=0, ge=0, description="Registered sessions")
    streaming_sessions: int = Field(default=0, ge=0, description="Sessions with a turn in flight")
    reaper_running: bool = Field(default=False, description="Idle reaper task is running")
    shutting_down: bool = Field(default=False, description="Shutdown in progress")
    error: str | None = Field(default=None, description="Error if unhealthy")


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "version": "1.0.0",
                "uptime_seconds": 3600.5,
                "engine": {
                    "initialized": True,
                    "provider": "openai",
                    "active_turns": 1,
                },
                "websocket": {
                    "active_sessions": 3,
                    "streaming_sessions": 1,
                    "reaper_running": True,
                    "shutting_down": False,
                },
            }
        }
    )

    status: Literal["healthy", "unhealthy"] = Field(
        ...,
        description="Overall system health status",
        json_schema_extra={"example": "healthy"},
    )
    version: str = Field(..., description="Application version")
    uptime_seconds: float = Field(..., ge=0, description="Seconds since startup")
    engine: EngineHealth = Field(..., description="Completion engine health")
    websocket: WebSocketHealth = Field(..., description="Session layer health")
