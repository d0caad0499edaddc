"""Caching strategies for cachecore.

Provides:
- Cache-aside reads with optional single-flight load coalescing
- Write-through and write-behind writes
- Proactive prefetching, on demand or on a schedule
"""

from cachecore.strategies.engine import (
    CacheResult,
    Loader,
    PrefetchResult,
    StrategyEngine,
    WriteStrategy,
)
from cachecore.strategies.prefetch import PrefetchJob, PrefetchScheduler
from cachecore.strategies.singleflight import SingleFlight
from cachecore.strategies.write_behind import (
    DeferredWrite,
    WriteBehindConfig,
    WriteBehindFailure,
    WriteBehindQueue,
    Writer,
)

__all__ = [
    "CacheResult",
    "Loader",
    "PrefetchResult",
    "StrategyEngine",
    "WriteStrategy",
    "PrefetchJob",
    "PrefetchScheduler",
    "SingleFlight",
    "DeferredWrite",
    "WriteBehindConfig",
    "WriteBehindFailure",
    "WriteBehindQueue",
    "Writer",
]
