import time

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from anchor.api.middleware.request_context import (
    REQUEST_ID_PREFIX,
    WEBSOCKET_ID_PREFIX,
    RequestContext,
    RequestContextMiddleware,
    clear_request_context,
    create_websocket_context,
    generate_request_id,
    get_request_context,
    get_request_id,
    set_request_context,
    update_request_context,
)


def test_request_context_dataclass() -> None:
    ctx = RequestContext(request_id="123")
    assert ctx.request_id == "123"
    assert ctx.elapsed_ms >= 0
    assert "request_id" in ctx.to_log_context()

    time.sleep(0.01)
    assert ctx.elapsed_ms > 0


def test_log_context_includes_bound_session() -> None:
    ctx = RequestContext(request_id="ws_1", session_id="ses_1", conversation_id="C1")

    log_ctx = ctx.to_log_context()

    assert log_ctx["session_id"] == "ses_1"
    assert log_ctx["conversation_id"] == "C1"
    assert "client_ip" not in log_ctx


def test_generate_request_id() -> None:
    rid1 = generate_request_id()
    rid2 = generate_request_id()
    assert rid1.startswith(REQUEST_ID_PREFIX)
    assert rid1 != rid2

    ws_rid = generate_request_id(WEBSOCKET_ID_PREFIX)
    assert ws_rid.startswith(WEBSOCKET_ID_PREFIX)


def test_context_var_management() -> None:
    ctx = RequestContext(request_id="test")

    set_request_context(ctx)
    assert get_request_context() == ctx
    assert get_request_id() == "test"

    update_request_context(session_id="ses_9", turn="first")
    assert ctx.session_id == "ses_9"
    assert ctx.extra == {"turn": "first"}

    clear_request_context()
    assert get_request_context() is None
    assert get_request_id() is None


def test_update_without_context_is_noop() -> None:
    update_request_context(session_id="ses_9")

    assert get_request_context() is None


def test_create_websocket_context() -> None:
    ctx = create_websocket_context(client_ip="10.0.0.1", conversation_id="C1")

    assert get_request_context() is ctx
    assert ctx.request_id.startswith(WEBSOCKET_ID_PREFIX)
    assert ctx.method == "WEBSOCKET"
    assert ctx.path == "/ws"
    assert ctx.conversation_id == "C1"


@pytest.fixture
def app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/context")
    async def get_ctx() -> dict[str, str | None]:
        ctx = get_request_context()
        assert ctx is not None
        return {"request_id": ctx.request_id, "client_ip": ctx.client_ip}

    return app


def test_middleware_sets_headers(app: FastAPI) -> None:
    client = TestClient(app)

    response = client.get("/context")

    assert response.status_code == 200
    request_id = response.json()["request_id"]
    assert request_id.startswith(REQUEST_ID_PREFIX)
    assert response.headers["X-Request-ID"] == request_id
    assert response.headers["X-Response-Time"].endswith("ms")


def test_middleware_honours_incoming_ids(app: FastAPI) -> None:
    client = TestClient(app)

    response = client.get(
        "/context",
        headers={"X-Request-ID": "req_custom", "X-Forwarded-For": "1.2.3.4, 10.0.0.1"},
    )

    assert response.json() == {"request_id": "req_custom", "client_ip": "1.2.3.4"}
    assert response.headers["X-Request-ID"] == "req_custom"
