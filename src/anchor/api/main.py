from __future__ import annotations

import sys
import time

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError

from anchor.api.middleware.request_context import RequestContextMiddleware
from anchor.api.routes import chat, health
from anchor.api.websocket.errors import SHUTDOWN_REASON, WSCloseCode
from anchor.api.websocket.reaper import IdleReaper
from anchor.api.websocket.registry import SessionRegistry
from anchor.core.constants import APP_NAME, Settings, get_settings
from anchor.integrations.completion_engine import CompletionEngine, OpenAICompletionEngine
from anchor.utils.logger import configure_uvicorn_logging, logger


def create_app(settings: Settings | None = None, engine: CompletionEngine | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to use (defaults to the cached environment settings)
        engine: Completion engine to use (defaults to an OpenAI-backed engine)
    """
    if settings is None:
        settings = get_settings()

    if settings.debug:
        from anchor.core.constants import _get_env_files

        logger.info(f"Env files: {[f.name for f in _get_env_files()]}")
        logger.info(f"Settings: app_env={settings.app_env}, engine_provider={settings.engine_provider}")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: startup and shutdown with graceful handling."""
        app.state.started_at = time.monotonic()

        # Engine failure aborts startup; uvicorn then exits non-zero
        app.state.engine = engine or OpenAICompletionEngine(settings)
        try:
            await app.state.engine.initialize()
        except Exception as e:
            logger.error(f"Completion engine failed to initialize: {e}", exc_info=True)
            raise

        app.state.registry = SessionRegistry()
        app.state.reaper = IdleReaper(
            app.state.registry,
            engine=app.state.engine,
            idle_threshold=settings.ws_idle_timeout,
            sweep_interval=settings.ws_sweep_interval,
        )
        await app.state.reaper.start()
        logger.info(f"{APP_NAME} ready (env: {settings.app_env}, port: {settings.port})")

        try:
            yield
        finally:
            logger.info("Initiating graceful shutdown sequence")

            # Phase 1: Stop the reaper so it cannot race the drain
            await app.state.reaper.stop()

            # Phase 2: Stop accepting new sessions and close existing ones
            await app.state.registry.drain(
                code=WSCloseCode.GOING_AWAY,
                reason=SHUTDOWN_REASON,
                timeout=settings.shutdown_connection_drain_timeout,
            )

            # Phase 3: Release everything the engine holds
            await app.state.engine.shutdown()
            logger.info("Shutdown complete")

    app = FastAPI(
        title=f"{APP_NAME} API",
        description="""
## Anchor API

Real-time session layer streaming assistant responses over WebSocket.

### Protocol
Connect to `/ws` (optionally `?conversationId=...`) and wait for the
`session:idle` frame carrying your session id. Then send `start_turn`,
`cancel` and `ping` frames.
""",
        version=settings.app_version,
        lifespan=lifespan,
        openapi_tags=[
            {
                "name": "Health",
                "description": "Health check endpoints for monitoring and orchestration",
            },
            {
                "name": "WebSocket",
                "description": "Real-time turn streaming",
            },
        ],
    )
    app.state.settings = settings

    # Request context middleware (adds request ID tracking)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router, prefix="/api")
    app.include_router(chat.router, tags=["WebSocket"])

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main() -> None:
    """Console entry point: validate configuration, then serve with uvicorn."""
    import uvicorn

    try:
        settings = get_settings()
    except (ValidationError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_uvicorn_logging()
    uvicorn.run(
        "anchor.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
