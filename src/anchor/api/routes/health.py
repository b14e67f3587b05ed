"""
Health check endpoint.

Returns 200 while the completion engine is ready and the server accepts
sessions, 503 otherwise, so a supervising client can wait for readiness.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from anchor.models.schemas.health import EngineHealth, HealthResponse, WebSocketHealth

router = APIRouter()


def _build_health(request: Request) -> HealthResponse:
    state = request.app.state
    settings = state.settings

    engine = getattr(state, "engine", None)
    if engine is not None:
        stats = engine.get_stats()
        engine_health = EngineHealth(
            initialized=engine.is_initialized,
            provider=stats.get("provider", settings.engine_provider),
            active_turns=stats.get("active_turns", 0),
        )
    else:
        engine_health = EngineHealth(initialized=False, error="not initialized")

    registry = getattr(state, "registry", None)
    reaper = getattr(state, "reaper", None)
    if registry is not None:
        registry_stats = registry.get_stats()
        ws_health = WebSocketHealth(
            active_sessions=registry_stats.get("active_sessions", 0),
            streaming_sessions=registry_stats.get("streaming_sessions", 0),
            reaper_running=reaper.is_running if reaper is not None else False,
            shutting_down=not registry.accepting,
        )
    else:
        ws_health = WebSocketHealth(error="not initialized")

    started_at = getattr(state, "started_at", None)
    uptime = 0.0 if started_at is None else max(0.0, time.monotonic() - started_at)

    healthy = engine_health.initialized and not ws_health.shutting_down and ws_health.error is None
    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.app_version,
        uptime_seconds=uptime,
        engine=engine_health,
        websocket=ws_health,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Completion engine and session layer status.",
    responses={
        200: {"description": "Service healthy"},
        503: {"description": "Engine not ready or shutting down"},
    },
    tags=["Health"],
)
async def health_check(request: Request) -> HealthResponse | JSONResponse:
    """Health check endpoint."""
    health = _build_health(request)
    if health.status != "healthy":
        return JSONResponse(status_code=503, content=health.model_dump(mode="json"))
    return health
