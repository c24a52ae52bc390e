from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

SERVICE_NAME = "civic-triage"

# Libraries that log every outbound request or connection at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with structured fields from :func:`log_extra` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = getattr(record, "extra_fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    return handler


def _console_handler() -> logging.Handler:
    return RichHandler(rich_tracebacks=True, markup=False, show_path=False, log_time_format="[%X]")


def configure_logging(level: str | None = None, json_output: bool = False) -> None:
    """Route root logging to rich console output, or JSON lines when ``LOG_FORMAT=json``."""
    lvl = getattr(logging, (level or os.getenv("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    use_json = json_output or os.getenv("LOG_FORMAT", "").lower() == "json"
    handler = _json_handler() if use_json else _console_handler()
    logging.basicConfig(level=lvl, format="%(message)s", handlers=[handler], force=True)

    # Keep AI backend request lines out of INFO output unless debugging
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_extra(**kwargs: Any) -> dict[str, Any]:
    """Structured fields for ``extra=``; None values are dropped."""
    return {"extra_fields": {k: v for k, v in kwargs.items() if v is not None}}
