from __future__ import annotations

from kv_discovery.observability.logging import (
    LOG_FORMAT_CONSOLE,
    LOG_FORMAT_ENV,
    LOG_FORMAT_JSON,
    ConsoleFormatter,
    JSONFormatter,
    LogContext,
    get_logger,
)

__all__ = [
    "LOG_FORMAT_CONSOLE",
    "LOG_FORMAT_ENV",
    "LOG_FORMAT_JSON",
    "ConsoleFormatter",
    "JSONFormatter",
    "LogContext",
    "get_logger",
]
