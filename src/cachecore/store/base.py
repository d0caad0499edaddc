"""Store adapter contract.

Every higher component talks to the key-value store through ``CacheStore``.
The contract is deliberately narrow so any backend offering string values,
counters, expiry and sets can sit underneath:

- get / set / delete
- replace / compare_and_set (conditional writes)
- increment / expire / ttl
- sadd / srem / smembers
- batch (ordered, per-operation results)

Implementations:
- InMemoryStore: single-process, for tests and single-instance deployments
- RedisStore: redis-py async client
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

BatchCommand = Literal[
    "get", "set", "delete", "increment", "expire", "ttl", "sadd", "srem", "smembers"
]


@dataclass(frozen=True)
class BatchOp:
    """One operation inside a batch."""

    command: BatchCommand
    key: str
    args: tuple[Any, ...] = field(default_factory=tuple)

    @classmethod
    def get(cls, key: str) -> BatchOp:
        return cls("get", key)

    @classmethod
    def set(cls, key: str, value: bytes, ttl: int = 0) -> BatchOp:
        return cls("set", key, (value, ttl))

    @classmethod
    def delete(cls, key: str) -> BatchOp:
        return cls("delete", key)

    @classmethod
    def increment(cls, key: str, amount: int = 1) -> BatchOp:
        return cls("increment", key, (amount,))

    @classmethod
    def expire(cls, key: str, ttl: int) -> BatchOp:
        return cls("expire", key, (ttl,))

    @classmethod
    def sadd(cls, key: str, *members: str) -> BatchOp:
        return cls("sadd", key, members)

    @classmethod
    def srem(cls, key: str, *members: str) -> BatchOp:
        return cls("srem", key, members)

    @classmethod
    def smembers(cls, key: str) -> BatchOp:
        return cls("smembers", key)

    @classmethod
    def ttl(cls, key: str) -> BatchOp:
        return cls("ttl", key)


@dataclass
class BatchResult:
    """Outcome of one batched operation."""

    ok: bool
    value: Any = None
    error: BaseException | None = None


class CacheStore(ABC):
    """Abstract key-value store interface."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Get raw bytes, or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int = 0) -> None:
        """Store bytes. A ttl of 0 stores without expiry."""

    @abstractmethod
    async def replace(self, key: str, value: bytes, ttl: int = 0) -> bool:
        """Store bytes only if ``key`` exists. Returns False if it did not."""

    @abstractmethod
    async def compare_and_set(
        self, key: str, expected: bytes | None, value: bytes, ttl: int = 0
    ) -> bool:
        """Atomically store bytes if the current value equals ``expected``.

        ``expected=None`` means the key must be absent. Returns False, leaving
        the key untouched, when the current value differs.
        """

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically add ``amount`` to an integer counter and return it."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Set a key's expiry. Returns False if the key does not exist."""

    @abstractmethod
    async def ttl(self, key: str) -> int | None:
        """Remaining seconds to live, 0 for persistent keys, None if absent."""

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add members to a set, returning how many were new."""

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        """Remove members from a set, returning how many were removed."""

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        """All members of a set (empty if the set is absent)."""

    @abstractmethod
    async def batch(self, ops: list[BatchOp]) -> list[BatchResult]:
        """Run operations in order. One failing op does not abort the rest."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check store connectivity."""

    async def close(self) -> None:
        """Release connections held by the store."""
        return None

    async def _dispatch(self, op: BatchOp) -> Any:
        """Run a single batched operation against this store."""
        if op.command == "get":
            return await self.get(op.key)
        if op.command == "set":
            return await self.set(op.key, *op.args)
        if op.command == "delete":
            return await self.delete(op.key)
        if op.command == "increment":
            return await self.increment(op.key, *op.args)
        if op.command == "expire":
            return await self.expire(op.key, *op.args)
        if op.command == "ttl":
            return await self.ttl(op.key)
        if op.command == "sadd":
            return await self.sadd(op.key, *op.args)
        if op.command == "srem":
            return await self.srem(op.key, *op.args)
        if op.command == "smembers":
            return await self.smembers(op.key)
        raise ValueError(f"Unknown batch command: {op.command}")
