"""Structured logging for cachecore.

Every record emitted while a ``LogContext`` is active carries the cache key,
rate-limit identity and operation it belongs to, so one request's cache
activity can be followed across coroutines.

Two output formats:
- JSON lines for log shippers (one object per record)
- Compact console lines for development

Usage:
    from cachecore.observability.logging import LogContext, configure_logging

    configure_logging(json_format=False, level="DEBUG")

    with LogContext(cache_key="cc:k:user:42:v1", operation="get"):
        logger.info("Cache miss")  # record carries cache_key and operation
"""

from __future__ import annotations

import contextvars
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

import orjson

CONTEXT_FIELDS = ("cache_key", "identity", "operation")

cache_key_var: contextvars.ContextVar[str] = contextvars.ContextVar("cache_key", default="")
identity_var: contextvars.ContextVar[str] = contextvars.ContextVar("identity", default="")
operation_var: contextvars.ContextVar[str] = contextvars.ContextVar("operation", default="")

_VARS: dict[str, contextvars.ContextVar[str]] = {
    "cache_key": cache_key_var,
    "identity": identity_var,
    "operation": operation_var,
}

# Attributes every LogRecord has; anything else arrived through ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", *CONTEXT_FIELDS}


def current_context() -> dict[str, str]:
    """Context values set in the running task, empty ones omitted."""
    return {name: var.get() for name, var in _VARS.items() if var.get()}


class ContextFilter(logging.Filter):
    """Copies the active LogContext onto each record as attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _VARS.items():
            setattr(record, name, var.get())
        return True


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _context(record: logging.LogRecord) -> dict[str, str]:
    # Records that bypassed ContextFilter fall back to the live context
    values = {name: getattr(record, name, None) for name in CONTEXT_FIELDS}
    if all(v is None for v in values.values()):
        return current_context()
    return {name: value for name, value in values.items() if value}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    {"ts": "2026-01-10T12:34:56.789+00:00", "level": "WARNING",
     "logger": "cachecore.invalidation", "msg": "Dependency cycle ...",
     "where": "invalidation.invalidate_key:142", "cache_key": "cc:k:orders:7"}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(_context(record))
        payload.update(_extras(record))

        if record.exc_info and record.exc_info[0] is not None:
            payload["error"] = {
                "type": record.exc_info[0].__name__,
                "detail": str(record.exc_info[1]),
                "stack": self.formatException(record.exc_info),
            }

        return orjson.dumps(payload, default=str).decode()


class ConsoleFormatter(logging.Formatter):
    """Single-line human-readable output.

    12:34:56.789 WARNING  cachecore.ratelimit  Rate limit exceeded  [id=api-key-1 op=check_rate]
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"
    SHORT_NAMES = {"cache_key": "key", "identity": "id", "operation": "op"}

    def __init__(self, use_colors: bool = True, stream: IO[str] | None = None) -> None:
        super().__init__()
        stream = stream or sys.stderr
        self.use_colors = use_colors and hasattr(stream, "isatty") and stream.isatty()

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        level = f"{record.levelname:<8}"
        if self.use_colors:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        line = f"{when} {level} {record.name}  {record.getMessage()}"

        context = _context(record)
        if context:
            tags = " ".join(f"{self.SHORT_NAMES[k]}={v}" for k, v in context.items())
            line = f"{line}  [{tags}]"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    use_colors: bool = True,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Install a single root handler with the chosen formatter.

    Existing root handlers are replaced. Returns the installed handler.
    """
    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter() if json_format else ConsoleFormatter(use_colors=use_colors, stream=stream)
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # redis-py logs every reconnect at INFO
    logging.getLogger("redis").setLevel(logging.WARNING)
    return handler


class LogContext:
    """Scope cache context onto every record logged inside the block.

    Usage:
        with LogContext(identity="api-key-123", operation="check_rate"):
            logger.info("Rate decision")
    """

    def __init__(self, **fields: str) -> None:
        unknown = sorted(set(fields) - set(_VARS))
        if unknown:
            raise ValueError(f"Unknown log context fields: {unknown}")
        self.fields = fields
        self._tokens: list[tuple[contextvars.ContextVar[str], contextvars.Token[str]]] = []

    def __enter__(self) -> LogContext:
        self._tokens = [(_VARS[name], _VARS[name].set(value)) for name, value in self.fields.items()]
        return self

    def __exit__(self, *exc: object) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []
