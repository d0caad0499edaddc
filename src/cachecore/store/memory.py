"""In-memory store for single-instance deployments and tests.

Mirrors Redis semantics for the subset of commands the contract needs:
counters are stored as their decimal bytes, sets are kept separately from
strings, and expired keys vanish lazily on access.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from typing import Any

from cachecore.store.base import BatchOp, BatchResult, CacheStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class InMemoryStore(CacheStore):
    """Dict-backed CacheStore with an injectable clock.

    All mutating operations complete without awaiting, so they are atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._data: dict[str, bytes | set[str]] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        """Evict ``key`` if it has expired, then report whether it exists."""
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _string(self, key: str) -> bytes | None:
        if not self._alive(key):
            return None
        value = self._data[key]
        if isinstance(value, set):
            raise TypeError(f"WRONGTYPE key holds a set: {key}")
        return value

    def _set_members(self, key: str, create: bool = False) -> set[str] | None:
        if not self._alive(key):
            if not create:
                return None
            self._data[key] = set()
        value = self._data[key]
        if not isinstance(value, set):
            raise TypeError(f"WRONGTYPE key holds a string: {key}")
        return value

    async def get(self, key: str) -> bytes | None:
        return self._string(key)

    async def set(self, key: str, value: bytes, ttl: int = 0) -> None:
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        self._data[key] = bytes(value)
        if ttl:
            self._expires[key] = self._clock() + ttl
        else:
            self._expires.pop(key, None)

    async def replace(self, key: str, value: bytes, ttl: int = 0) -> bool:
        if not self._alive(key):
            return False
        await self.set(key, value, ttl)
        return True

    async def compare_and_set(
        self, key: str, expected: bytes | None, value: bytes, ttl: int = 0
    ) -> bool:
        if self._string(key) != expected:
            return False
        await self.set(key, value, ttl)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expires.pop(key, None)
                deleted += 1
        return deleted

    async def increment(self, key: str, amount: int = 1) -> int:
        current = self._string(key)
        try:
            value = int(current) if current is not None else 0
        except ValueError as e:
            raise TypeError(f"Value at {key} is not an integer") from e
        value += amount
        self._data[key] = str(value).encode()
        return value

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        if ttl <= 0:
            await self.delete(key)
            return True
        self._expires[key] = self._clock() + ttl
        return True

    async def ttl(self, key: str) -> int | None:
        if not self._alive(key):
            return None
        deadline = self._expires.get(key)
        if deadline is None:
            return 0
        return max(1, math.ceil(deadline - self._clock()))

    async def sadd(self, key: str, *members: str) -> int:
        current = self._set_members(key, create=True)
        assert current is not None
        before = len(current)
        current.update(members)
        return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        current = self._set_members(key)
        if current is None:
            return 0
        removed = len(current.intersection(members))
        current.difference_update(members)
        if not current:
            await self.delete(key)
        return removed

    async def smembers(self, key: str) -> set[str]:
        current = self._set_members(key)
        return set(current) if current is not None else set()

    async def batch(self, ops: list[BatchOp]) -> list[BatchResult]:
        results: list[BatchResult] = []
        for op in ops:
            try:
                value: Any = await self._dispatch(op)
                results.append(BatchResult(ok=True, value=value))
            except (TypeError, ValueError) as e:
                logger.debug(f"Batched {op.command} failed for {op.key}: {e}")
                results.append(BatchResult(ok=False, error=e))
        return results

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._alive(key))
