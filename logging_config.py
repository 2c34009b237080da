#!/usr/bin/env python3
"""
Centralized logging configuration for the Territory Resolution service.

Usage:
    from logging_config import get_logger
    logger = get_logger(__name__)

    logger.info("Resolved ZIP", extra={"zip_code": "75201", "duration_ms": 42})
    logger.warning("Provider failed", extra={"source": "ercot", "error": "timeout"})

Environment:
    LOG_LEVEL   DEBUG / INFO / WARNING / ERROR (default INFO)
    LOG_FORMAT  "json" for one JSON object per line, anything else for console
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Dict


# Structured fields the formatters pick up from `extra=`
EXTRA_FIELDS = (
    "zip_code",
    "request_id",
    "source",
    "duration_ms",
    "error_code",
    "cache_hit",
    "status_code",
    "error",
)


def record_context(record: logging.LogRecord) -> Dict[str, object]:
    """The EXTRA_FIELDS values attached to a record, in declaration order."""
    return {attr: getattr(record, attr) for attr in EXTRA_FIELDS if hasattr(record, attr)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shipping."""

    def format(self, record):
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Coloured single-line output for local runs.

    The request id, when present, leads the message so interleaved
    provider threads can be told apart.
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        context = record_context(record)
        request_id = context.pop("request_id", None)

        color = self.LEVEL_COLORS.get(record.levelname, "")
        prefix = f"{self.formatTime(record, '%H:%M:%S')} {color}{record.levelname:<8}{self.RESET} {record.name}"
        if request_id:
            prefix += f" ({request_id})"

        line = f"{prefix}: {record.getMessage()}"
        if context:
            line += "  " + " ".join(f"{k}={v}" for k, v in context.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG)
    if os.environ.get("LOG_FORMAT", "").lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ConsoleFormatter())
    return handler


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger.

    Each named logger gets its own stdout handler once; repeated calls
    return the same logger untouched.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    logger.addHandler(_handler())
    logger.propagate = False
    return logger
