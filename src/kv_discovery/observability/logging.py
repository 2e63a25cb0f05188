"""Structured logging for the discovery loops.

Records carry the backend, namespace and member of the loop that emitted
them. ``$KV_DISCOVERY_LOG_FORMAT`` picks JSON lines or console text.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

__all__ = ["CONTEXT_KEYS", "LOG_FORMAT_CONSOLE", "LOG_FORMAT_ENV", "LOG_FORMAT_JSON", "ConsoleFormatter", "JSONFormatter", "LogContext", "get_logger"]

LOG_FORMAT_ENV = "KV_DISCOVERY_LOG_FORMAT"
LOG_FORMAT_JSON = "json"
LOG_FORMAT_CONSOLE = "console"

CONTEXT_KEYS = ("backend", "namespace", "member")

_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("kv_discovery_log_context", default={})

# Anything on a record beyond these arrived through ``extra=``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}
_PAYLOAD_KEYS = frozenset({"timestamp", "level", "logger", "message", "exception", "stack"})


def _merged(fields: dict[str, Any]) -> dict[str, Any]:
    return {**_context.get(), **{key: value for key, value in fields.items() if value is not None}}


class LogContext:
    """Context fields attached to every record logged in the current task.

    Use it as a ``with`` block, or call :meth:`bind` inside a task that owns
    its context. ``None`` values leave the current field untouched.
    """

    def __init__(self, **fields: Any) -> None:
        self._fields = fields
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        self._token = _context.set(_merged(self._fields))
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None

    @staticmethod
    def bind(**fields: Any) -> None:
        _context.set(_merged(fields))

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    def snapshot() -> dict[str, Any]:
        return {**dict.fromkeys(CONTEXT_KEYS), **_context.get()}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with context and ``extra=`` fields merged in."""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if datefmt:
            return stamp.strftime(datefmt)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.snapshot())
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in _PAYLOAD_KEYS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    default_format = (
        "%(asctime)s %(levelname)s %(name)s %(message)s "
        "backend=%(backend)s namespace=%(namespace)s member=%(member)s"
    )

    def __init__(self, fmt: str | None = None, datefmt: str | None = None) -> None:
        super().__init__(fmt or self.default_format, datefmt)

    def format(self, record: logging.LogRecord) -> str:
        context = LogContext.snapshot()
        for key in CONTEXT_KEYS:
            if key not in record.__dict__:
                record.__dict__[key] = "-" if context[key] is None else context[key]
        return super().format(record)


def get_logger(
    name: str,
    *,
    log_format: str | None = None,
    level: int | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Return ``name``'s logger with a structured stream handler.

    Args:
        name: Logger name.
        log_format: ``json`` or ``console``; defaults to ``$KV_DISCOVERY_LOG_FORMAT``.
        level: Logger level, INFO when unset.
        stream: Output stream, stderr by default.
    """
    kind = (log_format or os.getenv(LOG_FORMAT_ENV) or LOG_FORMAT_CONSOLE).strip().lower()
    if kind != LOG_FORMAT_JSON:
        kind = LOG_FORMAT_CONSOLE
    logger = logging.getLogger(name)
    if not any(getattr(handler, "_kv_discovery_format", None) == kind for handler in logger.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(JSONFormatter() if kind == LOG_FORMAT_JSON else ConsoleFormatter())
        handler._kv_discovery_format = kind  # type: ignore[attr-defined]
        logger.addHandler(handler)
    if level is not None:
        logger.setLevel(level)
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger
