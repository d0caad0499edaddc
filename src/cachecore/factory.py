"""Wiring for a complete cache layer.

Builds every component around one store, codec and metrics collector from a
Settings instance, and manages their lifecycle.

Example:
    async with open_cache_layer() as layer:
        result = await layer.engine.get("user:42", load_user)
        decision = await layer.rate_limiter.check_rate("api-key-1", 100, 60)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from cachecore.config import Settings
from cachecore.config import settings as default_settings
from cachecore.invalidation import InvalidationManager
from cachecore.keys import KeyCodec
from cachecore.observability.logging import configure_logging
from cachecore.observability.metrics import MetricsCollector, get_metrics
from cachecore.ratelimit import RateLimitAlgorithm, RateLimiter
from cachecore.session import SessionStore
from cachecore.store.base import CacheStore
from cachecore.store.redis import RedisStore
from cachecore.strategies.engine import StrategyEngine
from cachecore.strategies.write_behind import WriteBehindConfig, WriteBehindQueue

logger = logging.getLogger(__name__)


@dataclass
class CacheLayer:
    """All cache components sharing one store."""

    settings: Settings
    store: CacheStore
    codec: KeyCodec
    metrics: MetricsCollector
    invalidation: InvalidationManager
    write_behind: WriteBehindQueue
    engine: StrategyEngine
    rate_limiter: RateLimiter
    sessions: SessionStore

    async def start(self) -> None:
        """Start background workers."""
        await self.write_behind.start()
        logger.info(f"Cache layer started ({self.settings.env}, prefix={self.codec.prefix})")

    async def close(self) -> None:
        """Drain deferred writes, then release the store."""
        await self.write_behind.stop(drain=True)
        await self.store.close()
        logger.info("Cache layer closed")


async def build_cache_layer(
    settings: Settings | None = None,
    store: CacheStore | None = None,
    metrics: MetricsCollector | None = None,
) -> CacheLayer:
    """Construct a cache layer.

    Args:
        settings: Configuration (defaults to the module-level settings)
        store: Store to use; a RedisStore on ``settings.redis_url`` if omitted
        metrics: Collector to use; the process-wide one if omitted
    """
    settings = settings or default_settings
    if store is None:
        store = await RedisStore.connect(settings.redis_url)
    metrics = metrics or get_metrics()
    codec = KeyCodec(settings.key_prefix)

    invalidation = InvalidationManager(store, codec, max_depth=settings.invalidation_max_depth)
    write_behind = WriteBehindQueue(
        store,
        codec,
        WriteBehindConfig(
            queue_size=settings.write_behind_queue_size,
            workers=settings.write_behind_workers,
            put_timeout=settings.write_behind_put_timeout,
            max_retries=settings.write_behind_max_retries,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
        ),
        metrics=metrics,
    )
    engine = StrategyEngine(
        store,
        codec,
        invalidation=invalidation,
        metrics=metrics,
        write_behind=write_behind,
        default_ttl=settings.default_ttl,
        single_flight=settings.single_flight,
    )

    return CacheLayer(
        settings=settings,
        store=store,
        codec=codec,
        metrics=metrics,
        invalidation=invalidation,
        write_behind=write_behind,
        engine=engine,
        rate_limiter=RateLimiter(
            store,
            codec,
            algorithm=RateLimitAlgorithm(settings.rate_limit_algorithm),
            fail_open=settings.rate_limit_fail_open,
            metrics=metrics,
        ),
        sessions=SessionStore(engine, ttl=settings.session_ttl),
    )


@asynccontextmanager
async def open_cache_layer(
    settings: Settings | None = None,
    store: CacheStore | None = None,
    configure_logs: bool = False,
) -> AsyncIterator[CacheLayer]:
    """Build, start and finally close a cache layer.

    With ``configure_logs`` the root logger is set up from ``log_json`` and
    ``log_level`` first.
    """
    settings = settings or default_settings
    if configure_logs:
        configure_logging(json_format=settings.log_json, level=settings.log_level)

    layer = await build_cache_layer(settings, store)
    await layer.start()
    try:
        yield layer
    finally:
        await layer.close()
