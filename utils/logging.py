"""
Logging Utility - Structured JSON Logging

Provides centralized, structured logging configuration for all backend components.
Supports JSON format for production and human-readable format for development.

Usage:
    from utils.logging import setup_logging

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger = logging.getLogger(__name__)
    logger.info("Extract complete", extra={"pipeline": "members", "extracted": 3})
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(jsonlogger.JsonFormatter):
    """Render log records as single-line JSON objects including ``extra`` fields."""

    def __init__(self, fmt: str = "%(message)s", **kwargs: Any) -> None:
        super().__init__(fmt, **kwargs)

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name


def setup_logging(level: str = "INFO", format_type: str = "json") -> None:
    """Configure application-wide logging.

    Replaces any handlers already installed on the root logger so repeated
    calls (scheduler + API in one process) do not duplicate output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format ('json' or 'text')
    """
    handler = logging.StreamHandler(sys.stdout)
    if format_type == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
