"""Store adapters for cachecore.

Provides the CacheStore contract and its two backends:
- InMemoryStore for single-instance deployments and tests
- RedisStore for shared, multi-instance deployments
"""

from cachecore.store.base import BatchOp, BatchResult, CacheStore
from cachecore.store.memory import InMemoryStore
from cachecore.store.redis import RedisStore, close_redis, get_redis

__all__ = [
    "BatchOp",
    "BatchResult",
    "CacheStore",
    "InMemoryStore",
    "RedisStore",
    "get_redis",
    "close_redis",
]
