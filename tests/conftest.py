"""Global pytest configuration and fixtures.

Behavioural tests run against InMemoryStore driven by a FakeClock, so TTL
and window boundaries are exact and no test sleeps.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest

from cachecore.errors import StoreUnavailableError
from cachecore.invalidation import InvalidationManager
from cachecore.keys import KeyCodec
from cachecore.observability.metrics import MetricsCollector
from cachecore.store.memory import InMemoryStore
from cachecore.strategies.engine import StrategyEngine

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyStore(InMemoryStore):
    """InMemoryStore whose operations can be switched to fail as unreachable."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock)
        self.failing: set[str] = set()

    def fail(self, *operations: str) -> None:
        self.failing.update(operations)

    def recover(self) -> None:
        self.failing.clear()

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise StoreUnavailableError(operation, ConnectionError("Connection refused"))

    async def get(self, key):
        self._check("get")
        return await super().get(key)

    async def set(self, key, value, ttl=0):
        self._check("set")
        await super().set(key, value, ttl)

    async def increment(self, key, amount=1):
        self._check("increment")
        return await super().increment(key, amount)

    async def ttl(self, key):
        self._check("ttl")
        return await super().ttl(key)

    async def sadd(self, key, *members):
        self._check("sadd")
        return await super().sadd(key, *members)

    async def batch(self, ops):
        self._check("batch")
        return await super().batch(ops)


class InterleavingStore(InMemoryStore):
    """InMemoryStore that runs a hook once, right after a chosen operation on a key.

    Lets a test land a concurrent write exactly between a component's read
    and its follow-up write.
    """

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock)
        self._hooks: dict[tuple[str, str], Callable[[], Awaitable[None]]] = {}

    def after(self, operation: str, key: str, hook: Callable[[], Awaitable[None]]) -> None:
        self._hooks[(operation, key)] = hook

    async def _fire(self, operation: str, key: str) -> None:
        hook = self._hooks.pop((operation, key), None)
        if hook is not None:
            await hook()

    async def get(self, key):
        value = await super().get(key)
        await self._fire("get", key)
        return value

    async def smembers(self, key):
        members = await super().smembers(key)
        await self._fire("smembers", key)
        return members


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at START_TIME until advanced."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def flaky_store(clock: FakeClock) -> FlakyStore:
    return FlakyStore(clock)


@pytest.fixture
def codec() -> KeyCodec:
    return KeyCodec("test")


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh collector, independent of the process-wide one."""
    return MetricsCollector(enabled=True)


@pytest.fixture
def invalidation(store: InMemoryStore, codec: KeyCodec) -> InvalidationManager:
    return InvalidationManager(store, codec)


@pytest.fixture
def engine(
    store: InMemoryStore,
    codec: KeyCodec,
    invalidation: InvalidationManager,
    metrics: MetricsCollector,
    clock: FakeClock,
) -> StrategyEngine:
    return StrategyEngine(store, codec, invalidation=invalidation, metrics=metrics, clock=clock)


@pytest.fixture
def interleaving_store(clock: FakeClock) -> InterleavingStore:
    return InterleavingStore(clock)


@pytest.fixture
def interleaving_engine(
    interleaving_store: InterleavingStore,
    codec: KeyCodec,
    metrics: MetricsCollector,
    clock: FakeClock,
) -> StrategyEngine:
    return StrategyEngine(interleaving_store, codec, metrics=metrics, clock=clock)
