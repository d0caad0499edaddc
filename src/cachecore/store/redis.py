"""Redis store implementation for cachecore.

Provides async Redis operations behind the CacheStore contract.
Uses redis-py async client for connection pooling.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, TypeVar, cast

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cachecore.config import settings
from cachecore.errors import StoreUnavailableError
from cachecore.store.base import BatchOp, BatchResult, CacheStore

if TYPE_CHECKING:
    from redis.asyncio import Redis

T = TypeVar("T")

# Module-level connection pool
_redis_client: Redis | None = None

_TRANSIENT = (RedisConnectionError, RedisTimeoutError, OSError)

# ARGV: expect-absent flag, expected value, new value, ttl (0 = no expiry)
_COMPARE_AND_SET = """
local current = redis.call("get", KEYS[1])
if ARGV[1] == "1" then
    if current then return 0 end
elseif current ~= ARGV[2] then
    return 0
end
if tonumber(ARGV[4]) > 0 then
    redis.call("set", KEYS[1], ARGV[3], "EX", ARGV[4])
else
    redis.call("set", KEYS[1], ARGV[3])
end
return 1
"""


async def get_redis() -> Redis:
    """Get or create the Redis client.

    Uses connection pooling for efficient connection management.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            decode_responses=False,  # We're storing bytes
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisStore(CacheStore):
    """CacheStore backed by a redis.asyncio client.

    Connection and timeout errors are translated to StoreUnavailableError so
    callers never depend on redis-py exception types.
    """

    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    async def connect(cls, url: str | None = None) -> RedisStore:
        """Build a store on its own client for ``url``.

        Without a url the shared module-level client is used.
        """
        if url is None:
            return cls(await get_redis())
        client = redis.from_url(url, decode_responses=False)  # type: ignore[no-untyped-call]
        return cls(client)

    async def _call(self, operation: str, result: Awaitable[T] | T) -> T:
        try:
            return await cast(Awaitable[T], result)
        except _TRANSIENT as e:
            raise StoreUnavailableError(operation, e) from e

    async def get(self, key: str) -> bytes | None:
        return cast(bytes | None, await self._call("get", self.client.get(key)))

    async def set(self, key: str, value: bytes, ttl: int = 0) -> None:
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        if ttl:
            await self._call("set", self.client.set(key, value, ex=ttl))
        else:
            await self._call("set", self.client.set(key, value))

    async def replace(self, key: str, value: bytes, ttl: int = 0) -> bool:
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        if ttl:
            result = await self._call("replace", self.client.set(key, value, ex=ttl, xx=True))
        else:
            result = await self._call("replace", self.client.set(key, value, xx=True))
        return bool(result)

    async def compare_and_set(
        self, key: str, expected: bytes | None, value: bytes, ttl: int = 0
    ) -> bool:
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        absent = "1" if expected is None else "0"
        result = await self._call(
            "compare_and_set",
            self.client.eval(_COMPARE_AND_SET, 1, key, absent, expected or b"", value, ttl),
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return cast(int, await self._call("delete", self.client.delete(*keys)))

    async def increment(self, key: str, amount: int = 1) -> int:
        return cast(int, await self._call("increment", self.client.incrby(key, amount)))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._call("expire", self.client.expire(key, ttl)))

    async def ttl(self, key: str) -> int | None:
        remaining = cast(int, await self._call("ttl", self.client.ttl(key)))
        if remaining == -2:
            return None
        if remaining == -1:
            return 0
        return remaining

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return cast(int, await self._call("sadd", self.client.sadd(key, *members)))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return cast(int, await self._call("srem", self.client.srem(key, *members)))

    async def smembers(self, key: str) -> set[str]:
        members = cast(set[Any], await self._call("smembers", self.client.smembers(key)))
        return {_text(m) for m in members}

    async def batch(self, ops: list[BatchOp]) -> list[BatchResult]:
        """Run ops in one non-transactional pipeline.

        The pipeline is executed with ``raise_on_error=False`` so a failing
        command is returned in place rather than aborting the batch.
        """
        if not ops:
            return []

        async with self.client.pipeline(transaction=False) as pipe:
            for op in ops:
                self._queue(pipe, op)
            raw = await self._call("batch", pipe.execute(raise_on_error=False))

        results: list[BatchResult] = []
        for op, value in zip(ops, raw, strict=True):
            if isinstance(value, Exception):
                results.append(BatchResult(ok=False, error=value))
            else:
                results.append(BatchResult(ok=True, value=self._normalize(op, value)))
        return results

    @staticmethod
    def _queue(pipe: Any, op: BatchOp) -> None:
        if op.command == "get":
            pipe.get(op.key)
        elif op.command == "set":
            value, ttl = op.args
            if ttl:
                pipe.set(op.key, value, ex=ttl)
            else:
                pipe.set(op.key, value)
        elif op.command == "delete":
            pipe.delete(op.key)
        elif op.command == "increment":
            pipe.incrby(op.key, *op.args)
        elif op.command == "expire":
            pipe.expire(op.key, *op.args)
        elif op.command == "ttl":
            pipe.ttl(op.key)
        elif op.command == "sadd":
            pipe.sadd(op.key, *op.args)
        elif op.command == "srem":
            pipe.srem(op.key, *op.args)
        elif op.command == "smembers":
            pipe.smembers(op.key)
        else:
            raise ValueError(f"Unknown batch command: {op.command}")

    @staticmethod
    def _normalize(op: BatchOp, value: Any) -> Any:
        if op.command == "set":
            return None
        if op.command == "expire":
            return bool(value)
        if op.command == "smembers":
            return {_text(m) for m in value}
        if op.command == "ttl":
            return None if value == -2 else (0 if value == -1 else value)
        return value

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            await cast(Awaitable[bool], self.client.ping())
            return True
        except _TRANSIENT:
            return False

    async def close(self) -> None:
        await self.client.aclose()
