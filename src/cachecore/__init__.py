"""cachecore - async caching strategies, invalidation and rate limiting.

A backend-agnostic caching layer over a narrow key-value store contract:
- Cache-aside, write-through, write-behind and prefetch strategies
- Tag, version and dependency-graph invalidation
- Fixed- and sliding-window rate limiting
- Sliding-expiration sessions
- Hit/miss/error metrics with Prometheus export
"""

from cachecore.config import Settings, settings
from cachecore.errors import (
    CacheError,
    DependencyCycleWarning,
    LoaderError,
    QueueFullError,
    RateLimitExceededError,
    SerializationError,
    StoreUnavailableError,
)
from cachecore.factory import CacheLayer, build_cache_layer, open_cache_layer
from cachecore.invalidation import InvalidationManager, InvalidationReport
from cachecore.keys import KeyCodec, LogicalKey
from cachecore.ratelimit import RateDecision, RateLimitAlgorithm, RateLimiter, RateWindow
from cachecore.serialization import CacheEntry, OrjsonSerializer, Serializer
from cachecore.session import Session, SessionStore
from cachecore.store import BatchOp, BatchResult, CacheStore, InMemoryStore, RedisStore
from cachecore.strategies import (
    CacheResult,
    PrefetchResult,
    PrefetchScheduler,
    StrategyEngine,
    WriteBehindConfig,
    WriteBehindQueue,
    WriteStrategy,
)

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "settings",
    "CacheError",
    "DependencyCycleWarning",
    "LoaderError",
    "QueueFullError",
    "RateLimitExceededError",
    "SerializationError",
    "StoreUnavailableError",
    "CacheLayer",
    "build_cache_layer",
    "open_cache_layer",
    "InvalidationManager",
    "InvalidationReport",
    "KeyCodec",
    "LogicalKey",
    "RateDecision",
    "RateLimitAlgorithm",
    "RateLimiter",
    "RateWindow",
    "CacheEntry",
    "OrjsonSerializer",
    "Serializer",
    "Session",
    "SessionStore",
    "BatchOp",
    "BatchResult",
    "CacheStore",
    "InMemoryStore",
    "RedisStore",
    "CacheResult",
    "PrefetchResult",
    "PrefetchScheduler",
    "StrategyEngine",
    "WriteBehindConfig",
    "WriteBehindQueue",
    "WriteStrategy",
]
