"""Cache metrics for cachecore.

Tracks hits, misses and errors as monotonically increasing counters and
derives the hit rate. Counts are kept in-process for cheap reads and
mirrored into Prometheus counters for scraping.

Usage:
    from cachecore.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.record_hit("user")
    print(metrics.hit_rate)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, generate_latest

from cachecore.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsCollector:
    """Process-wide hit/miss/error counters.

    Counters only ever grow; they reset with the process. ``namespace``
    labels let callers split counts per cache area in Prometheus while the
    in-process totals stay global.
    """

    enabled: bool = True
    hits: int = 0
    misses: int = 0
    errors: int = 0

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _registry: CollectorRegistry | None = field(default=None, repr=False)
    _hits_total: Any = field(default=None, repr=False)
    _misses_total: Any = field(default=None, repr=False)
    _errors_total: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.enabled:
            logger.info("Prometheus cache metrics are disabled")
            return

        self._registry = CollectorRegistry()
        self._hits_total = Counter(
            "cachecore_cache_hits_total",
            "Cache hits",
            ["namespace"],
            registry=self._registry,
        )
        self._misses_total = Counter(
            "cachecore_cache_misses_total",
            "Cache misses",
            ["namespace"],
            registry=self._registry,
        )
        self._errors_total = Counter(
            "cachecore_cache_errors_total",
            "Cache errors",
            ["namespace", "kind"],
            registry=self._registry,
        )

    def record_hit(self, namespace: str = "default") -> None:
        with self._lock:
            self.hits += 1
        if self._hits_total is not None:
            self._hits_total.labels(namespace=namespace).inc()

    def record_miss(self, namespace: str = "default") -> None:
        with self._lock:
            self.misses += 1
        if self._misses_total is not None:
            self._misses_total.labels(namespace=namespace).inc()

    def record_error(self, kind: str, namespace: str = "default") -> None:
        """Count a failure. ``kind`` is the error class name, e.g. StoreUnavailableError."""
        with self._lock:
            self.errors += 1
        if self._errors_total is not None:
            self._errors_total.labels(namespace=namespace, kind=kind).inc()

    @property
    def hit_rate(self) -> float:
        """hits / (hits + misses), or 0.0 before any lookups."""
        with self._lock:
            total = self.hits + self.misses
            return self.hits / total if total else 0.0

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "errors": self.errors,
                "hit_rate": self.hits / total if total else 0.0,
            }

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics collector
_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get the process-wide metrics collector, creating it on first access."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector(enabled=settings.enable_metrics)
    return _collector
