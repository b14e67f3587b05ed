"""
Logging setup for Anchor using Python's standard logging
with JSON formatting for structured logs.

Log destinations:
- Console (stderr): Human-readable format for debugging
- $ANCHOR_LOG_DIR/sessions.jsonl: JSON format for session lifecycle events
- $ANCHOR_LOG_DIR/errors.jsonl: JSON format for error tracking

File handlers are only attached when ANCHOR_LOG_DIR is set.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys

from pathlib import Path
from typing import Any

from pythonjsonlogger import json as jsonlogger

from anchor.api.middleware.request_context import get_request_context
from anchor.core.constants import (
    LOG_BACKUP_COUNT_ERRORS,
    LOG_BACKUP_COUNT_SESSIONS,
    LOG_MAX_SIZE,
    LOG_PREVIEW_LENGTH,
)

LOGGER_NAME = "anchor"


class SessionFilter(logging.Filter):
    """Filter to allow all INFO level logs for the session log"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.INFO


class ErrorFilter(logging.Filter):
    """Filter to only allow ERROR and CRITICAL logs"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


class ColoredConsoleFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to log levels and standardizes format.
    Format: HH:MM:SS [LEVEL] logger_name - message
    """

    GREY = "\x1b[38;20m"
    GREEN = "\x1b[32;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        level_fmt = f"[{record.levelname}]"
        if color:
            level_fmt = f"{color}{level_fmt}{self.RESET}"

        record.asctime = self.formatTime(record, "%H:%M:%S")
        message = f"{record.asctime} {level_fmt} {record.name} - {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_uvicorn_logging() -> None:
    """
    Configure uvicorn loggers to use our standard colored formatting.
    This ensures uvicorn logs (access, error) match the application log style.
    """
    formatter = ColoredConsoleFormatter()

    main_logger = logging.getLogger("uvicorn")
    main_logger.handlers = []
    main_logger.setLevel(logging.INFO)

    for name in ("uvicorn.access", "uvicorn.error"):
        sub_logger = logging.getLogger(name)
        sub_logger.handlers = []
        sub_logger.setLevel(logging.INFO)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        sub_logger.addHandler(handler)
        sub_logger.propagate = False


def setup_logging(
    name: str = LOGGER_NAME,
    debug: bool | None = None,
    log_dir: Path | None = None,
) -> logging.Logger:
    """
    Set up logging with console and optional JSON file handlers.

    Args:
        name: Logger name
        debug: Enable debug logging (overrides DEBUG env var)
        log_dir: Directory for JSON log files (overrides ANCHOR_LOG_DIR env var)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level
    logger.handlers = []

    if debug is None:
        debug = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter())
    logger.addHandler(console_handler)

    if log_dir is None and os.getenv("ANCHOR_LOG_DIR"):
        log_dir = Path(os.environ["ANCHOR_LOG_DIR"])
    if log_dir is None:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)

    # --- Session Log Handler (JSON) ---
    session_handler = logging.handlers.RotatingFileHandler(
        log_dir / "sessions.jsonl",
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT_SESSIONS,
        encoding="utf-8",
    )
    session_handler.setLevel(logging.INFO)
    session_handler.addFilter(SessionFilter())
    session_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(message)s %(session_id)s %(conversation_id)s %(request_id)s",
            timestamp=True,
        )
    )
    logger.addHandler(session_handler)

    # --- Error Log Handler (JSON) ---
    error_handler = logging.handlers.RotatingFileHandler(
        log_dir / "errors.jsonl",
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT_ERRORS,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.addFilter(ErrorFilter())
    error_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(name)s %(message)s",
            timestamp=True,
        )
    )
    logger.addHandler(error_handler)

    return logger


def preview(text: str, limit: int = LOG_PREVIEW_LENGTH) -> str:
    """Single-line preview of user content for log messages."""
    flat = text.replace("\n", " ")
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


class AnchorLogger:
    """
    High-level logging interface for Anchor.
    Wraps standard Python logging with structured keyword fields.
    """

    def __init__(self, name: str = LOGGER_NAME):
        self.logger = setup_logging(name)

    def _enrich_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Enrich log arguments with the current connection context."""
        if ctx := get_request_context():
            for key, value in ctx.to_log_context().items():
                kwargs.setdefault(key, value)
        return kwargs

    def debug(self, message: str, **kwargs: Any) -> None:
        """Debug level logging"""
        self.logger.debug(message, extra=self._enrich_context(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        """Info level logging"""
        self.logger.info(message, extra=self._enrich_context(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        """Warning level logging"""
        self.logger.warning(message, extra=self._enrich_context(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Error level logging with optional exception info"""
        self.logger.error(message, extra=self._enrich_context(kwargs), exc_info=exc_info)


# Global logger instance
logger = AnchorLogger()
