"""Tests for completion client factory utilities.

Tests client creation and configuration.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import httpx
import pytest

from anchor.core.constants import Settings
from anchor.utils.client_factory import (
    DEFAULT_READ_TIMEOUT,
    _log_request,
    create_azure_client,
    create_client_from_settings,
    create_http_client,
    create_openai_client,
    sanitize_headers,
)


class TestCreateHttpClient:
    """Tests for create_http_client function."""

    @pytest.mark.asyncio
    async def test_default_timeouts(self) -> None:
        client = create_http_client()

        assert client.timeout.read == DEFAULT_READ_TIMEOUT
        assert client.event_hooks["request"] == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_custom_read_timeout(self) -> None:
        client = create_http_client(read_timeout=42.0)

        assert client.timeout.read == 42.0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_logging_hooks(self) -> None:
        client = create_http_client(enable_logging=True)

        assert len(client.event_hooks["request"]) == 1
        assert len(client.event_hooks["response"]) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_request_hook_redacts_credentials(self) -> None:
        request = httpx.Request("POST", "https://api.example.com/v1", headers={"Authorization": "Bearer sk-secret1234"})

        with patch("anchor.utils.client_factory.logger") as mock_logger:
            await _log_request(request)

        headers = mock_logger.debug.call_args.kwargs["headers"]
        assert headers["authorization"] == "***1234"


class TestSanitizeHeaders:
    def test_redacts_sensitive_headers(self) -> None:
        result = sanitize_headers({"api-key": "abcdefgh", "X-API-Key": "abc", "Content-Type": "application/json"})

        assert result == {"api-key": "***efgh", "X-API-Key": "***", "Content-Type": "application/json"}


class TestCreateOpenAIClient:
    """Tests for create_openai_client function."""

    def test_create_openai_client_minimal(self) -> None:
        with patch("anchor.utils.client_factory.AsyncOpenAI") as mock_async_openai:
            mock_client = Mock()
            mock_async_openai.return_value = mock_client

            result = create_openai_client(api_key="test-key")

            assert result is mock_client
            call_kwargs = mock_async_openai.call_args[1]
            assert call_kwargs["api_key"] == "test-key"
            assert call_kwargs["http_client"] is None
            assert "base_url" not in call_kwargs

    def test_create_openai_client_with_base_url(self) -> None:
        with patch("anchor.utils.client_factory.AsyncOpenAI") as mock_async_openai:
            create_openai_client(api_key="test-key", base_url="https://api.example.com")

            assert mock_async_openai.call_args[1]["base_url"] == "https://api.example.com"

    def test_create_azure_client(self) -> None:
        with patch("anchor.utils.client_factory.AsyncAzureOpenAI") as mock_azure:
            create_azure_client(api_key="key", endpoint="https://x.openai.azure.com/", api_version="2024-10-21")

            call_kwargs = mock_azure.call_args[1]
            assert call_kwargs["azure_endpoint"] == "https://x.openai.azure.com/"
            assert call_kwargs["api_version"] == "2024-10-21"


class TestCreateClientFromSettings:
    """Tests for provider selection."""

    def test_openai_provider(self, settings: Settings) -> None:
        with (
            patch("anchor.utils.client_factory.create_http_client") as mock_http,
            patch("anchor.utils.client_factory.AsyncOpenAI") as mock_async_openai,
        ):
            create_client_from_settings(settings)

        mock_http.assert_called_once_with(
            enable_logging=settings.http_request_logging,
            read_timeout=settings.http_read_timeout,
        )
        assert mock_async_openai.call_args[1]["api_key"] == settings.openai_api_key

    def test_azure_provider(self) -> None:
        settings = Settings(
            app_env="test",
            engine_provider="azure",
            azure_openai_api_key="a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d6",
            azure_openai_endpoint="https://test.openai.azure.com",
        )

        with (
            patch("anchor.utils.client_factory.create_http_client"),
            patch("anchor.utils.client_factory.AsyncAzureOpenAI") as mock_azure,
        ):
            create_client_from_settings(settings)

        assert mock_azure.call_args[1]["azure_endpoint"] == "https://test.openai.azure.com/"
