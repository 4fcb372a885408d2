"""
Structured logging configuration for Cartwise.

Console output for development, JSON lines for production, selected by
``CARTWISE_LOG_FORMAT``. Structured fields travel through ``extra=``.

Usage:
    from cartwise.config.logging import get_logger

    logger = get_logger(__name__)
    logger.info("prompt_rendered", extra={"template": "faq_response", "tokens": 212})
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

LOG_LEVEL = os.getenv("CARTWISE_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("CARTWISE_LOG_FORMAT", "console")  # "console" or "json"

# LogRecord attributes that are not user-supplied extras.
_STANDARD_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "asctime",
        "taskName",
    }
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_LOG_ATTRS and not key.startswith("_")
    }


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class ConsoleFormatter(logging.Formatter):
    """Human-readable single-line formatter."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        use_colors = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
        timestamp = self.formatTime(record, "%H:%M:%S")

        level = record.levelname
        if use_colors:
            level_str = f"{self.COLORS.get(level, '')}{level:<8}{self.COLORS['RESET']}"
        else:
            level_str = f"{level:<8}"

        extras = [f"{k}={v}" for k, v in _extra_fields(record).items()]
        extra_str = f" [{', '.join(extras)}]" if extras else ""

        line = f"{timestamp} {level_str} {record.name}: {record.getMessage()}{extra_str}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_extra_fields(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


# ---------------------------------------------------------------------------
# Logger Factory
# ---------------------------------------------------------------------------

_configured = False


def configure_logging() -> None:
    """Configure the ``cartwise`` logger tree once."""
    global _configured
    if _configured:
        return

    level = getattr(logging, LOG_LEVEL, logging.INFO)
    root = logging.getLogger("cartwise")
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if LOG_FORMAT == "json" else ConsoleFormatter())
    root.addHandler(handler)

    for noisy_logger in ["httpx", "httpcore", "anthropic", "openai"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with consistent configuration.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    configure_logging()
    return logging.getLogger(name)


class _RequestAdapter(logging.LoggerAdapter):
    """Merges bound request ids with per-call extras."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def request_logger(
    logger: logging.Logger,
    session_id: str,
    merchant_id: str,
) -> logging.LoggerAdapter:
    """Bind request identifiers so every record carries them as extras."""
    return _RequestAdapter(logger, {"session_id": session_id, "merchant_id": merchant_id})


__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "get_logger",
    "configure_logging",
    "request_logger",
    "LOG_LEVEL",
    "LOG_FORMAT",
]
