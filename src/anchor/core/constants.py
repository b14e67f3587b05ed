"""
Constants and configuration for Anchor.
Centralizes all magic numbers and configuration values.
Includes Pydantic validation for environment variables.
"""

from __future__ import annotations

import os
import threading

from pathlib import Path
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import (
    DotEnvSettingsSource,
    PydanticBaseSettingsSource,
)

# ============================================================================
# Project Paths
# ============================================================================

#: Project root directory (parent of src/)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Anchor"
APP_VERSION = "1.0.0"

#: Production and development listen on different ports so both can run side by side
DEFAULT_PORT_PRODUCTION = 3847
DEFAULT_PORT_DEVELOPMENT = 3848

# ============================================================================
# WebSocket Protocol
# ============================================================================

#: WebSocket endpoint path
WS_ENDPOINT_PATH = "/ws"

#: Query parameter carrying the conversation to bind at connect time
WS_CONVERSATION_QUERY_PARAM = "conversationId"

#: Session identifiers: prefix + 16 hex characters (64 bits of entropy)
SESSION_ID_PREFIX = "ses_"
SESSION_ID_BYTES = 8

# Server -> client frame types
FRAME_SESSION_IDLE = "session:idle"
FRAME_MESSAGE_DELTA = "message:delta"
FRAME_MESSAGE_DONE = "message:done"
FRAME_MESSAGE_CANCELLED = "message:cancelled"
FRAME_ERROR = "error"
FRAME_PONG = "pong"

# Client -> server frame types
FRAME_START_TURN = "start_turn"
FRAME_CANCEL = "cancel"
FRAME_PING = "ping"

#: Frames that end a turn on the client side
TURN_TERMINAL_FRAMES = frozenset({FRAME_MESSAGE_DONE, FRAME_MESSAGE_CANCELLED, FRAME_ERROR})

# ============================================================================
# Session Lifecycle Defaults
# ============================================================================

#: Sessions idle longer than this are reclaimed (seconds, 10 min)
DEFAULT_IDLE_TIMEOUT = 600.0

#: Reaper sweep interval (seconds, 10 min)
DEFAULT_SWEEP_INTERVAL = 600.0

#: Time a cancelled turn gets to wind down before its task is force-cancelled
DEFAULT_TURN_CANCEL_GRACE = 5.0

#: Inbound frames above this size are rejected (1 MiB)
DEFAULT_MAX_FRAME_BYTES = 1024 * 1024

# ============================================================================
# Client Reconnection Defaults
# ============================================================================

#: Delay before reconnect attempt 1; attempt n waits base * multiplier ** (n - 1)
DEFAULT_RECONNECT_BASE_DELAY = 2.0
DEFAULT_RECONNECT_MULTIPLIER = 2.0
DEFAULT_RECONNECT_MAX_DELAY = 60.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

#: Application-level ping interval while connected
DEFAULT_KEEPALIVE_INTERVAL = 30.0

#: Missing pong after this long counts as a lost connection
DEFAULT_PONG_TIMEOUT = 10.0

#: Client gives up waiting for a cancel acknowledgement after this long
DEFAULT_CANCEL_TIMEOUT = 10.0

#: Transport open timeout for the client socket
DEFAULT_CONNECT_TIMEOUT = 10.0

# ============================================================================
# Completion Engine Defaults
# ============================================================================

#: Maximum history messages replayed to the engine per turn
MAX_HISTORY_MESSAGES = 50

DEFAULT_MODEL = "gpt-4.1-mini"

# ============================================================================
# Logging
# ============================================================================

LOG_MAX_SIZE = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT_SESSIONS = 5
LOG_BACKUP_COUNT_ERRORS = 3
LOG_PREVIEW_LENGTH = 80

# ============================================================================
# Environment Configuration with Pydantic Validation
# ============================================================================

#: Valid environment names for configuration loading
Environment = Literal["development", "production", "test"]

#: Project directory for .env file resolution
_ENV_DIR = PROJECT_ROOT


def _get_env_files() -> list[Path]:
    """Determine which .env files to load based on APP_ENV.

    Load order (later files override earlier - pydantic-settings last-wins):
    1. .env (base defaults) - lowest priority
    2. .env.{environment} (environment-specific overrides)
    3. .env.local (local developer overrides, gitignored) - highest priority

    Returns:
        List of Path objects for env files that exist.
    """
    env_name = os.getenv("APP_ENV", "development").lower()
    if env_name not in ("development", "production", "test"):
        env_name = "development"

    candidates = [
        _ENV_DIR / ".env",
        _ENV_DIR / f".env.{env_name}",
        _ENV_DIR / ".env.local",
    ]
    return [p for p in candidates if p.exists()]


def _reload_dotenv_into_environ() -> None:
    """Reload our dotenv files into os.environ so environment-specific values win.

    Must be called BEFORE Settings() instantiation.
    """
    from dotenv import load_dotenv

    for env_file in _get_env_files():
        load_dotenv(env_file, override=True)


class Settings(BaseSettings):
    """Environment settings with validation and environment-specific file support.

    Configuration priority (highest to lowest):
    1. Values passed to Settings() constructor
    2. Environment variables
    3. .env.local > .env.{APP_ENV} > .env (dotenv files, last wins)

    Validates at startup to fail fast on configuration errors.
    Supports both Azure OpenAI and base OpenAI as the completion engine.
    """

    # Environment identification
    app_env: Environment = Field(default="development", description="Application environment")
    app_version: str = Field(default=APP_VERSION, description="Application version")

    # Debug and logging
    debug: bool = Field(default=False, description="Enable debug logging")
    http_request_logging: bool = Field(default=False, description="Enable HTTP request/response logging")

    # API server
    api_host: str = Field(default="127.0.0.1", description="Listen host")
    api_port: int | None = Field(default=None, description="Listen port (defaults depend on app_env)")

    # Completion engine
    engine_provider: str = Field(default="openai", description="Completion engine: 'openai' or 'azure'")
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    azure_openai_api_key: str | None = Field(default=None, description="Azure OpenAI API key")
    azure_openai_endpoint: HttpUrl | None = Field(default=None, description="Azure OpenAI endpoint URL")
    azure_api_version: str = Field(default="2024-10-21", description="Azure OpenAI API version")
    default_model: str = Field(default=DEFAULT_MODEL, description="Model used for conversation turns")
    engine_max_history_messages: int = Field(
        default=MAX_HISTORY_MESSAGES,
        ge=0,
        description="History messages replayed to the engine per turn",
    )
    http_read_timeout: float = Field(default=600.0, description="HTTP read timeout for streaming (seconds)")

    # WebSocket session management
    ws_idle_timeout: float = Field(
        default=DEFAULT_IDLE_TIMEOUT,
        gt=0,
        description="Reclaim sessions idle longer than this (seconds, default 10 min)",
    )
    ws_sweep_interval: float = Field(
        default=DEFAULT_SWEEP_INTERVAL,
        gt=0,
        description="Idle reaper sweep interval (seconds, default 10 min)",
    )
    ws_turn_cancel_grace: float = Field(
        default=DEFAULT_TURN_CANCEL_GRACE,
        ge=0,
        description="Time a cancelled turn gets to stop before its task is force-cancelled (seconds)",
    )
    ws_max_connections: int = Field(
        default=100,
        gt=0,
        description="Maximum concurrent WebSocket sessions",
    )
    ws_max_frame_bytes: int = Field(
        default=DEFAULT_MAX_FRAME_BYTES,
        gt=0,
        description="Inbound frames larger than this are rejected as invalid",
    )

    # Client connection behaviour
    client_reconnect_base_delay: float = Field(default=DEFAULT_RECONNECT_BASE_DELAY, gt=0)
    client_reconnect_multiplier: float = Field(default=DEFAULT_RECONNECT_MULTIPLIER, ge=1)
    client_reconnect_max_delay: float = Field(default=DEFAULT_RECONNECT_MAX_DELAY, gt=0)
    client_max_reconnect_attempts: int = Field(default=DEFAULT_MAX_RECONNECT_ATTEMPTS, ge=0)
    client_keepalive_interval: float = Field(default=DEFAULT_KEEPALIVE_INTERVAL, gt=0)
    client_pong_timeout: float = Field(default=DEFAULT_PONG_TIMEOUT, gt=0)
    client_cancel_timeout: float = Field(default=DEFAULT_CANCEL_TIMEOUT, gt=0)

    # Graceful shutdown configuration
    shutdown_connection_drain_timeout: float = Field(
        default=10.0,
        description="Time to wait for WebSocket sessions to close during shutdown (seconds)",
    )

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings source priority for environment-specific config.

        Priority (highest to lowest):
        1. init_settings - Values passed to Settings() constructor
        2. env_settings - Environment variables
        3. dotenv files - .env.local > .env.{APP_ENV} > .env (last-wins in list)
        """
        dotenv_source = DotEnvSettingsSource(
            settings_cls,
            env_file=_get_env_files(),
            env_file_encoding="utf-8",
        )
        return (init_settings, env_settings, dotenv_source)

    @field_validator("app_env", mode="before")
    @classmethod
    def validate_app_env(cls, v: str | None) -> str:
        """Validate and normalize APP_ENV value."""
        if v is None:
            return "development"
        normalized = str(v).lower()
        if normalized not in ("development", "production", "test"):
            raise ValueError(f"app_env must be 'development', 'production', or 'test', got '{v}'")
        return normalized

    @field_validator("engine_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate completion engine provider selection."""
        value = v.lower()
        if value not in ("azure", "openai"):
            raise ValueError("engine_provider must be 'azure' or 'openai'")
        return value

    @field_validator("azure_openai_endpoint")
    @classmethod
    def ensure_endpoint_format(cls, v: HttpUrl | None) -> HttpUrl | None:
        """Ensure endpoint URL ends with trailing slash for OpenAI client."""
        if v is None:
            return None
        url_str = str(v)
        if not url_str.endswith("/"):
            return HttpUrl(url_str + "/")
        return v

    @field_validator("openai_api_key", "azure_openai_api_key")
    @classmethod
    def validate_api_key(cls, v: str | None) -> str | None:
        """Basic validation of API key format."""
        if v is not None and len(v) < 10:
            raise ValueError("Invalid API key format")
        return v

    @model_validator(mode="after")
    def validate_provider_credentials(self) -> Settings:
        """Validate that required credentials are present for the selected provider."""
        if self.engine_provider == "azure":
            if not self.azure_openai_api_key:
                raise ValueError(
                    "Configuration Error: azure_openai_api_key is required when engine_provider='azure'.\n"
                    "Set AZURE_OPENAI_API_KEY in your .env file or environment."
                )
            if not self.azure_openai_endpoint:
                raise ValueError(
                    "Configuration Error: azure_openai_endpoint is required when engine_provider='azure'.\n"
                    "Set AZURE_OPENAI_ENDPOINT in your .env file or environment."
                )
        elif not self.openai_api_key:
            raise ValueError(
                "Configuration Error: openai_api_key is required when engine_provider='openai'.\n"
                "Set OPENAI_API_KEY in your .env file or environment."
            )

        if self.client_reconnect_max_delay < self.client_reconnect_base_delay:
            raise ValueError("client_reconnect_max_delay must not be smaller than client_reconnect_base_delay")
        return self

    @property
    def port(self) -> int:
        """Effective listen port (development and production differ by default)."""
        if self.api_port is not None:
            return self.api_port
        return DEFAULT_PORT_DEVELOPMENT if self.is_development else DEFAULT_PORT_PRODUCTION

    @property
    def azure_endpoint_str(self) -> str:
        """Get endpoint as string for OpenAI client."""
        if self.azure_openai_endpoint is None:
            return ""
        return str(self.azure_openai_endpoint)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


# ============================================================================
# Settings Management (Thread-safe)
# ============================================================================


class _SettingsManager:
    """Thread-safe settings manager.

    Uses a class to avoid global statement warnings from linters.
    """

    __slots__ = ("_instance", "_lock")

    def __init__(self) -> None:
        self._instance: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        """Get the cached settings instance, loading it on first use.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        if self._instance is not None:
            return self._instance

        with self._lock:
            if self._instance is not None:
                return self._instance
            _reload_dotenv_into_environ()
            self._instance = Settings()
            return self._instance

    def reload(self) -> Settings:
        """Force reload settings from environment files."""
        with self._lock:
            _reload_dotenv_into_environ()
            self._instance = Settings()
            return self._instance

    def clear(self) -> None:
        """Clear cached settings instance.

        Primarily useful for testing to ensure fresh settings on each test.
        """
        with self._lock:
            self._instance = None


# Module-level singleton manager
_settings_manager = _SettingsManager()


def get_settings() -> Settings:
    """Get settings instance.

    This is the primary entry point for accessing application settings.
    Settings are validated on first access and cached.

    Raises:
        ValueError: If required configuration is missing or invalid.
    """
    return _settings_manager.get()


def reload_settings() -> Settings:
    """Force reload settings from environment files."""
    return _settings_manager.reload()


def clear_settings_cache() -> None:
    """Clear cached settings instance."""
    _settings_manager.clear()
