"""Logging configuration for the API, workers and CLI.

Two output shapes:
  - JSON lines for staging/production, one object per record
  - Colored single lines for development and tests

Records are correlated by request id (taken from ``request_id_var`` when the
caller did not pass one) and carry verification context passed through
``extra=`` (``guild_id``, ``rule_id``, ``assignment_id``, ...).
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Set by RequestIDMiddleware for the duration of a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Verification context shown by both formatters
CONTEXT_FIELDS = ("user_id", "guild_id", "rule_id", "assignment_id", "address")

# HTTP/timing fields, JSON output only
REQUEST_FIELDS = ("request_id", "method", "path", "status_code", "duration_ms")


def _context(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, Any]:
    return {
        key: getattr(record, key)
        for key in fields
        if getattr(record, key, None) not in (None, "")
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record, REQUEST_FIELDS))
        entry.update(_context(record, CONTEXT_FIELDS))

        if record.exc_info and record.exc_info[1]:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """``12:00:01 [    INFO] [req-id] logger: message  guild_id=... rule_id=...``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        parts = [f"{color}{ts} [{record.levelname:>8s}]{self.RESET}"]

        request_id = getattr(record, "request_id", None)
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        parts.append(f"{record.name}: {record.getMessage()}")

        context = _context(record, CONTEXT_FIELDS)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            parts.append(f"{self.DIM}{pairs}{self.RESET}")

        line = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


class RequestLogFilter(logging.Filter):
    """Stamp records with the current request id unless one is already set."""

    def __init__(self, request_id: str = "") -> None:
        super().__init__()
        self.request_id = request_id

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = self.request_id or request_id_var.get()
        if request_id and not getattr(record, "request_id", None):
            record.request_id = request_id  # type: ignore[attr-defined]
        return True


def setup_logging(env: str = "development", log_level: str = "INFO") -> None:
    """Configure the root logger.

    Args:
        env: Application environment (development/staging/production/test)
        log_level: Minimum log level
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if env in ("staging", "production") else DevFormatter())
    handler.addFilter(RequestLogFilter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpcore", "httpx", "asyncio", "celery.beat", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
