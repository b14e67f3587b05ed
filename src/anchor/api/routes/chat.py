from __future__ import annotations

from fastapi import APIRouter, Query, WebSocket

from anchor.api.middleware.request_context import clear_request_context, create_websocket_context
from anchor.api.websocket.handler import ProtocolHandler
from anchor.core.constants import WS_CONVERSATION_QUERY_PARAM, WS_ENDPOINT_PATH
from anchor.utils.logger import logger

router = APIRouter()


@router.websocket(WS_ENDPOINT_PATH)
async def session_websocket(
    websocket: WebSocket,
    conversation_id: str | None = Query(default=None, alias=WS_CONVERSATION_QUERY_PARAM, min_length=1),
) -> None:
    """WebSocket endpoint for streaming conversation turns."""
    state = websocket.app.state
    settings = state.settings

    # Initialize WebSocket request context for logging/tracking
    client_ip = websocket.client.host if websocket.client else None
    create_websocket_context(client_ip=client_ip, conversation_id=conversation_id)
    logger.info("WebSocket upgrade request received")

    handler = ProtocolHandler(
        websocket,
        registry=state.registry,
        engine=state.engine,
        conversation_id=conversation_id,
        turn_cancel_grace=settings.ws_turn_cancel_grace,
        max_connections=settings.ws_max_connections,
        max_frame_bytes=settings.ws_max_frame_bytes,
    )
    try:
        await handler.run()
    finally:
        clear_request_context()
