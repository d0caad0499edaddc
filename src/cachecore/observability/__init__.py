"""Observability for cachecore: structured logging and cache metrics."""

from cachecore.observability.logging import (
    ConsoleFormatter,
    ContextFilter,
    JsonFormatter,
    LogContext,
    configure_logging,
)
from cachecore.observability.metrics import MetricsCollector, get_metrics

__all__ = [
    "ConsoleFormatter",
    "ContextFilter",
    "JsonFormatter",
    "LogContext",
    "configure_logging",
    "MetricsCollector",
    "get_metrics",
]
