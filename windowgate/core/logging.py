"""Logging utilities with JSON formatting and per-call correlation.

This module centralizes logging configuration, including:
- Context-aware perform_id propagation via contextvars
- JSON formatter for machine-friendly logs
- Configurable stdout/file handlers with rotation support

The library itself only ever calls ``logging.getLogger(__name__)``; installing
handlers through ``configure_logging`` is left to the host application.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from windowgate.core.config import LogSettings, settings

_perform_id_var: ContextVar[str | None] = ContextVar("perform_id", default=None)

# Logging fields we intentionally exclude from extra payload capture
_EXCLUDED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "stack",
}


def set_perform_id(perform_id: str | None) -> Token:
    """Store the current perform id in a context variable.

    Args:
        perform_id: Correlation identifier for one ``perform`` call.

    Returns:
        Token that restores the previous value via ``reset_perform_id``.
    """

    return _perform_id_var.set(perform_id)


def get_perform_id() -> str | None:
    """Fetch the current perform id from context."""

    return _perform_id_var.get()


def reset_perform_id(token: Token) -> None:
    """Restore the perform id that was current before ``set_perform_id``."""

    _perform_id_var.reset(token)


def _record_extras(record: LogRecord) -> dict[str, Any]:
    """Collect the ``extra=`` fields attached to a LogRecord."""

    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _EXCLUDED_ATTRS and not key.startswith("_")
    }


def _default_timestamp() -> str:
    """Generate an ISO-8601 UTC timestamp string."""

    return datetime.now(timezone.utc).isoformat()


class PerformIdFilter(logging.Filter):
    """Attach perform_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "perform_id", None) is None:
            perform_id = get_perform_id()
            if perform_id:
                record.perform_id = perform_id
        return True


class JsonFormatter(logging.Formatter):
    """Format LogRecord as a single JSON object per line."""

    def __init__(self, *, ensure_ascii: bool = True) -> None:
        super().__init__()
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        record_data: dict[str, Any] = {
            "timestamp": _default_timestamp(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        perform_id = getattr(record, "perform_id", None) or get_perform_id()
        if perform_id:
            record_data["perform_id"] = perform_id

        record_data.update(_record_extras(record))

        if record.exc_info:
            record_data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(record_data, default=str, ensure_ascii=self.ensure_ascii)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    """Construct the logging handler based on configuration.

    Args:
        log_settings: Resolved logging settings from environment.

    Returns:
        Configured logging handler (stdout or rotating file).
    """

    if log_settings.output.lower() == "file":
        file_path = Path(log_settings.file_path or "logs/windowgate.log")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if log_settings.max_bytes:
            return RotatingFileHandler(
                file_path,
                maxBytes=log_settings.max_bytes,
                backupCount=log_settings.backup_count,
                encoding="utf-8",
            )
        return logging.FileHandler(file_path, encoding="utf-8")

    return logging.StreamHandler(sys.stdout)


def configure_logging(log_settings: LogSettings | None = None) -> logging.Handler:
    """Configure the root logger with JSON (or plain) formatting.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.

    Returns:
        The handler that was installed on the root logger.
    """

    cfg = log_settings or settings.log

    level = getattr(logging, cfg.level.upper(), logging.INFO)
    handler = _build_handler(cfg)
    handler.addFilter(PerformIdFilter())

    if cfg.format.lower() == "plain":
        formatter: logging.Formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
    else:
        formatter = JsonFormatter()

    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    return handler
