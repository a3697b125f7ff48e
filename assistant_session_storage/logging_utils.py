"""
Logging helpers for the storage and sync layers.

The host application decides where logs go. These helpers give it a
structured JSON formatter for machine-readable log files, a one-call
setup function, and an adapter that stamps every record with fixed
context such as the session id or the active backend.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

PACKAGE_LOGGER = "assistant_session_storage"

# LogRecord attributes that are never copied into the JSON payload
_RESERVED_ATTRS = frozenset(
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
        "taskName",
        "message",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """
    Format log records as single-line JSON objects.

    Fields: timestamp (UTC ISO 8601), level, logger, message, and
    exception when present. Anything passed through ``extra=`` is
    appended; values that cannot be serialized are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except (TypeError, ValueError):
                payload[key] = str(value)

        return json.dumps(payload, default=str)


def configure_structured_logging(
    level: int | str | None = None,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Attach a JSON handler to the package logger (or any named logger).

    Args:
        level: Logging level. Defaults to ASSISTANT_LOG_LEVEL or INFO.
        logger_name: Logger to configure; None configures the root logger.
        stream: Output stream (default: stderr, keeping stdout free for CLIs).

    Returns:
        The configured logger.
    """
    if level is None:
        level = os.environ.get("ASSISTANT_LOG_LEVEL", "INFO").upper()

    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


def get_storage_logger(name: str) -> logging.Logger:
    """
    Get a logger for a storage component with consistent naming.

    Args:
        name: Component name (e.g., 'sqlite', 'sync')

    Returns:
        Logger named 'assistant_session_storage.{name}'
    """
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that merges fixed context into each record's extra fields.

    Example:
        >>> log = StorageLoggerAdapter(logger, {"backend": "sqlite"})
        >>> log.info("Saved session", extra={"session_id": sid})
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
