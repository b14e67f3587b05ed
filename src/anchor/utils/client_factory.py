"""
Completion client factory utilities.
Centralizes AsyncOpenAI / AsyncAzureOpenAI creation with consistent HTTP configuration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from openai import AsyncAzureOpenAI, AsyncOpenAI

from anchor.utils.logger import logger

if TYPE_CHECKING:
    from anchor.core.constants import Settings

# Streaming turns can pause for a long time between fragments,
# so the read timeout is generous while the others stay short
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 600.0
DEFAULT_WRITE_TIMEOUT = 30.0
DEFAULT_POOL_TIMEOUT = 30.0

_SENSITIVE_HEADERS = frozenset({"authorization", "api-key", "x-api-key"})


def sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    """Redact credentials, keeping the last 4 characters for correlation."""
    sanitized = {}
    for key, value in headers.items():
        if key.lower() in _SENSITIVE_HEADERS:
            sanitized[key] = f"***{value[-4:]}" if len(value) > 4 else "***"
        else:
            sanitized[key] = value
    return sanitized


async def _log_request(request: httpx.Request) -> None:
    logger.debug(
        f"HTTP Request: {request.method} {request.url}",
        http_method=request.method,
        headers=sanitize_headers(dict(request.headers)),
    )


async def _log_response(response: httpx.Response) -> None:
    logger.debug(
        f"HTTP Response: {response.status_code} {response.request.method} {response.request.url}",
        status_code=response.status_code,
    )


def create_http_client(
    enable_logging: bool = False,
    read_timeout: float | None = None,
) -> httpx.AsyncClient:
    """Create HTTP client with proper timeouts for streaming.

    Args:
        enable_logging: Log each request/response line (bodies are never logged)
        read_timeout: Read timeout in seconds (default: 600s)

    Returns:
        Configured httpx.AsyncClient
    """
    effective_read_timeout = read_timeout if read_timeout is not None else DEFAULT_READ_TIMEOUT
    timeout = httpx.Timeout(
        connect=DEFAULT_CONNECT_TIMEOUT,
        read=effective_read_timeout,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )

    if enable_logging:
        event_hooks: dict[str, list[Any]] = {
            "request": [_log_request],
            "response": [_log_response],
        }
        return httpx.AsyncClient(event_hooks=event_hooks, timeout=timeout)

    return httpx.AsyncClient(timeout=timeout)


def create_openai_client(
    api_key: str,
    base_url: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncOpenAI:
    """Create AsyncOpenAI client with consistent configuration.

    Args:
        api_key: OpenAI API key
        base_url: Optional base URL for compatible endpoints
        http_client: Optional preconfigured httpx client

    Returns:
        Configured AsyncOpenAI client
    """
    kwargs: dict[str, Any] = {"api_key": api_key, "http_client": http_client}
    if base_url:
        kwargs["base_url"] = base_url
    return AsyncOpenAI(**kwargs)


def create_azure_client(
    api_key: str,
    endpoint: str,
    api_version: str,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncAzureOpenAI:
    """Create AsyncAzureOpenAI client."""
    return AsyncAzureOpenAI(
        api_key=api_key,
        azure_endpoint=endpoint,
        api_version=api_version,
        http_client=http_client,
    )


def create_client_from_settings(settings: Settings) -> AsyncOpenAI:
    """Create the completion client for the configured provider."""
    http_client = create_http_client(
        enable_logging=settings.http_request_logging,
        read_timeout=settings.http_read_timeout,
    )
    if settings.engine_provider == "azure":
        return create_azure_client(
            api_key=settings.azure_openai_api_key or "",
            endpoint=settings.azure_endpoint_str,
            api_version=settings.azure_api_version,
            http_client=http_client,
        )
    return create_openai_client(api_key=settings.openai_api_key or "", http_client=http_client)
