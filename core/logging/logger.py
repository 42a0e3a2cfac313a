"""
Structured logging utilities for POSTWATCH workers.

This module provides:
- `JsonFormatter`: a JSON formatter suitable for machine-ingested logs.
- `message_context`: a ContextVar that stamps every record with the
  queue message id or event checkpoint currently being processed.
- `get_logger`: configure a console (and optionally rotating file) logger with either
  human-readable or JSON output, level derived from env when not provided.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, Optional

_message_ctx: ContextVar[Optional[Dict[str, str]]] = ContextVar("message_ctx", default=None)


@contextmanager
def message_context(**fields: object) -> Iterator[None]:
    """Attach correlation fields (message_id, post_id, ...) to logs emitted inside the block."""
    merged = dict(_message_ctx.get() or {})
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    token = _message_ctx.set(merged)
    try:
        yield
    finally:
        _message_ctx.reset(token)


class ContextFilter(logging.Filter):
    """Copy the current message context onto each record as `ctx`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.ctx = _message_ctx.get() or {}
        return True


class JsonFormatter(logging.Formatter):
    """
    A logging formatter that serializes log records into a single-line JSON object.

    Fields included:
        timestamp, level, logger, message, file, line, function, the bound message
        context, and exception (when present).
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a `LogRecord` into a JSON string.

        Args:
            record: The log record to be formatted.

        Returns:
            A JSON-encoded string containing the standardized log fields.
        """
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }
        ctx = getattr(record, "ctx", None)
        if ctx:
            log_record.update(ctx)
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


class _TextFormatter(logging.Formatter):
    """Human format with the message context appended as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = getattr(record, "ctx", None)
        if ctx:
            line += " [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        return line


def get_logger(
    name: str = "postwatch",
    log_dir: Optional[str] = None,
    level: Optional[int] = None,
    json_logs: bool = False,
) -> logging.Logger:
    """
    Create (or retrieve) a configured logger with console (+ optional rotating file) handlers.

    If the logger already has handlers attached, it is returned as-is to avoid duplicates.
    Child loggers (``postwatch.*``) propagate to it.

    Args:
        name: Logger name and base filename for the log file.
        log_dir: Directory for a rotating log file; console only when None.
        level: Explicit logging level (e.g., logging.INFO). If None, uses `_get_env_log_level()`.
        json_logs: If True, logs are formatted as JSON; otherwise as human-readable text.

    Returns:
        A `logging.Logger` instance configured with handlers and formatters.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid re-adding handlers

    logger.setLevel(level or _get_env_log_level())

    formatter = (
        JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
        if json_logs
        else _TextFormatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    ctx_filter = ContextFilter()

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            Path(log_dir) / f"{name}.log", maxBytes=10_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ctx_filter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ctx_filter)
    logger.addHandler(console_handler)

    return logger


def _get_env_log_level() -> int:
    """
    Resolve the logging level from environment variable `LOG_LEVEL` (default: INFO).

    Returns:
        A numeric logging level (e.g., logging.INFO) recognized by the logging module.
    """
    level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)
