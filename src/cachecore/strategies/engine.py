"""Strategy engine: cache-aside reads and write-through / write-behind writes.

The engine resolves the current physical key of a logical key (version
aware), reads and writes CacheEntry envelopes through the store adapter and
records every outcome on the metrics collector.

Failure policy:
- Store unavailable on a cache-aside read: treated as a miss, loader runs
- Write-back after a successful load: best effort, logged and counted only
- Loader / writer exceptions: propagate to the caller unchanged
- Store unavailable on a write-through cache write: propagates

Example:
    engine = StrategyEngine(store, codec, invalidation)

    result = await engine.get("user:42", load_user, ttl=300)
    if result.from_cache:
        ...

    await engine.put("user:42", user, strategy=WriteStrategy.WRITE_THROUGH, writer=save_user)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from cachecore.errors import SerializationError, StoreUnavailableError
from cachecore.invalidation import InvalidationManager
from cachecore.keys import KeyCodec, LogicalKey
from cachecore.observability.logging import LogContext
from cachecore.observability.metrics import MetricsCollector, get_metrics
from cachecore.serialization import CacheEntry, OrjsonSerializer, Serializer
from cachecore.store.base import CacheStore
from cachecore.strategies.singleflight import SingleFlight
from cachecore.strategies.write_behind import WriteBehindQueue, Writer

logger = logging.getLogger(__name__)

T = TypeVar("T")

Loader = Callable[[], Awaitable[Any] | Any]

DEFAULT_TTL = 3600
PREFETCH_WRITE_ATTEMPTS = 3


class WriteStrategy(str, Enum):
    """How ``put`` reaches the authoritative store."""

    CACHE_ASIDE = "cache_aside"  # cache only, caller owns the source of truth
    WRITE_THROUGH = "write_through"
    WRITE_BEHIND = "write_behind"


@dataclass
class CacheResult(Generic[T]):
    """A value plus whether it was served from the cache."""

    value: T
    from_cache: bool


@dataclass
class PrefetchResult:
    """Outcome of a prefetch pass."""

    written: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async function and return its result."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _check_ttl(ttl: int) -> int:
    if ttl < 0:
        raise ValueError(f"ttl must be >= 0, got {ttl}")
    return int(ttl)


class StrategyEngine:
    """Orchestrates reads and writes between callers, the cache and the source."""

    def __init__(
        self,
        store: CacheStore,
        codec: KeyCodec,
        invalidation: InvalidationManager | None = None,
        serializer: Serializer | None = None,
        metrics: MetricsCollector | None = None,
        write_behind: WriteBehindQueue | None = None,
        default_ttl: int = DEFAULT_TTL,
        single_flight: bool = False,
        namespace: str = "default",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.codec = codec
        self.invalidation = invalidation or InvalidationManager(store, codec)
        self.serializer = serializer or OrjsonSerializer()
        self.metrics = metrics or get_metrics()
        self.write_behind = write_behind
        self.default_ttl = _check_ttl(default_ttl)
        self.namespace = namespace
        self._clock = clock
        self._flights: SingleFlight | None = SingleFlight() if single_flight else None

    @property
    def single_flight(self) -> bool:
        return self._flights is not None

    # -------------------------------------------------------------------------
    # Raw entry access (physical keys)
    # -------------------------------------------------------------------------

    async def read(self, physical_key: str) -> CacheEntry | None:
        """Read and decode the entry at ``physical_key``, recording hit or miss.

        Store and decode errors propagate; ``get`` is the degrading path.
        """
        data = await self.store.get(physical_key)
        if data is None:
            self.metrics.record_miss(self.namespace)
            return None

        entry = CacheEntry.from_bytes(physical_key, data, self.serializer)
        self.metrics.record_hit(self.namespace)
        return entry

    def _entry(
        self,
        physical_key: str,
        value: Any,
        ttl: int,
        created_at: float | None,
        version: int,
    ) -> CacheEntry:
        return CacheEntry(
            physical_key=physical_key,
            value=value,
            created_at=created_at if created_at is not None else self._clock(),
            ttl_seconds=_check_ttl(ttl),
            version=version,
        )

    async def write(
        self,
        physical_key: str,
        value: Any,
        ttl: int,
        created_at: float | None = None,
        version: int = 1,
    ) -> CacheEntry:
        """Encode ``value`` into an envelope and store it at ``physical_key``."""
        entry = self._entry(physical_key, value, ttl, created_at, version)
        await self.store.set(physical_key, entry.to_bytes(self.serializer), entry.ttl_seconds)
        return entry

    async def rewrite(
        self,
        physical_key: str,
        value: Any,
        ttl: int,
        created_at: float | None = None,
        version: int = 1,
    ) -> CacheEntry | None:
        """Like ``write``, but only if ``physical_key`` still exists.

        Returns None when the entry was removed in the meantime; nothing is
        written then.
        """
        entry = self._entry(physical_key, value, ttl, created_at, version)
        data = entry.to_bytes(self.serializer)
        if not await self.store.replace(physical_key, data, entry.ttl_seconds):
            return None
        return entry

    async def remove(self, physical_key: str) -> bool:
        return await self.store.delete(physical_key) > 0

    # -------------------------------------------------------------------------
    # Cache-aside
    # -------------------------------------------------------------------------

    async def get(
        self,
        key: LogicalKey,
        loader: Loader,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> CacheResult[Any]:
        """Return the cached value for ``key`` or load, cache and return it.

        The physical key is resolved once up front, so a version bump that
        lands mid-call does not affect this read.
        """
        ttl = self.default_ttl if ttl is None else _check_ttl(ttl)
        tags = tuple(tags)

        try:
            version, physical_key = await self._resolve(key)
        except StoreUnavailableError as e:
            # Without the version no physical key is safe to read or fill
            self.metrics.record_error(type(e).__name__, self.namespace)
            self.metrics.record_miss(self.namespace)
            logger.warning(f"Cache unavailable, loading {self.codec.logical(key)} directly: {e}")
            return CacheResult(value=await _call(loader), from_cache=False)

        with LogContext(cache_key=physical_key, operation="get"):
            try:
                data = await self.store.get(physical_key)
            except StoreUnavailableError as e:
                self.metrics.record_error(type(e).__name__, self.namespace)
                logger.warning(f"Cache read failed, treating as miss: {e}")
                data = None

            if data is not None:
                try:
                    entry = CacheEntry.from_bytes(physical_key, data, self.serializer)
                except SerializationError as e:
                    self.metrics.record_error(type(e).__name__, self.namespace)
                    logger.warning(f"Discarding undecodable cache entry: {e}")
                else:
                    self.metrics.record_hit(self.namespace)
                    return CacheResult(value=entry.value, from_cache=True)

            self.metrics.record_miss(self.namespace)

            async def load_and_fill() -> Any:
                value = await _call(loader)
                await self._write_back(physical_key, value, ttl, version, tags)
                return value

            if self._flights is not None:
                value = await self._flights.do(physical_key, load_and_fill)
            else:
                value = await load_and_fill()

        return CacheResult(value=value, from_cache=False)

    async def _write_back(
        self, physical_key: str, value: Any, ttl: int, version: int, tags: tuple[str, ...]
    ) -> None:
        """Populate the cache after a load; failures never reach the caller."""
        try:
            await self.write(physical_key, value, ttl, version=version)
            await self._tag(physical_key, tags)
        except (StoreUnavailableError, SerializationError) as e:
            self.metrics.record_error(type(e).__name__, self.namespace)
            logger.warning(f"Cache write-back failed for {physical_key}: {e}")

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def put(
        self,
        key: LogicalKey,
        value: Any,
        ttl: int | None = None,
        strategy: WriteStrategy = WriteStrategy.CACHE_ASIDE,
        writer: Writer | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Write ``value`` according to ``strategy``.

        Args:
            key: Logical key
            value: Value to store
            ttl: Seconds to live; None uses the default, except that an entry
                currently stored without expiry keeps no expiry
            strategy: CACHE_ASIDE, WRITE_THROUGH or WRITE_BEHIND
            writer: Authoritative writer ``(key, value)``; required for
                write-through and write-behind
            tags: Tags to attach to the written entry

        Write-behind enqueues before touching the cache, so a full queue
        (QueueFullError) leaves both stores unchanged.
        """
        tags = tuple(tags)
        if strategy is not WriteStrategy.CACHE_ASIDE and writer is None:
            raise ValueError(f"{strategy.value} requires a writer")

        if strategy is WriteStrategy.WRITE_THROUGH:
            assert writer is not None
            # Source of truth first; a failure here leaves the cache untouched
            await _call(writer, key, value)
        elif strategy is WriteStrategy.WRITE_BEHIND:
            if self.write_behind is None:
                raise RuntimeError("Write-behind requires a WriteBehindQueue")
            assert writer is not None
            await self.write_behind.enqueue(key, value, writer)

        with LogContext(cache_key=self.codec.logical(key), operation="put"):
            try:
                version, physical_key = await self._resolve(key)
                effective_ttl = await self._effective_ttl(physical_key, ttl)
                await self.write(physical_key, value, effective_ttl, version=version)
                await self._tag(physical_key, tags)
            except StoreUnavailableError as e:
                self.metrics.record_error(type(e).__name__, self.namespace)
                logger.error(f"Cache write failed ({strategy.value}): {e}")
                raise

    async def delete(self, key: LogicalKey) -> bool:
        """Delete the current version of ``key`` (dependents are untouched)."""
        _, physical_key = await self._resolve(key)
        return await self.remove(physical_key)

    # -------------------------------------------------------------------------
    # Prefetch
    # -------------------------------------------------------------------------

    async def prefetch(
        self,
        loaders: Mapping[LogicalKey, Loader],
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> PrefetchResult:
        """Populate keys proactively, concurrently with normal traffic.

        Last writer wins by timestamp: each load records when it started and
        its entry is only written if nothing newer is already cached. The
        check and the write form one compare-and-set, so a ``put`` landing in
        between is never overwritten. Failures are collected on the result, never raised.
        """
        tags = tuple(tags)
        result = PrefetchResult()
        keys = list(loaders)

        outcomes = await asyncio.gather(
            *(self._prefetch_one(key, loaders[key], ttl, tags) for key in keys),
            return_exceptions=True,
        )

        for key, outcome in zip(keys, outcomes, strict=True):
            rendered = self.codec.logical(key)
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self.metrics.record_error(type(outcome).__name__, "prefetch")
                logger.warning(f"Prefetch failed for {rendered}: {outcome}")
                result.failed[rendered] = str(outcome)
            elif outcome:
                result.written.append(rendered)
            else:
                result.skipped.append(rendered)

        logger.info(
            f"Prefetch pass: {len(result.written)} written, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed"
        )
        return result

    async def _prefetch_one(
        self, key: LogicalKey, loader: Loader, ttl: int | None, tags: tuple[str, ...]
    ) -> bool:
        started_at = self._clock()
        value = await _call(loader)
        version, physical_key = await self._resolve(key)

        for _ in range(PREFETCH_WRITE_ATTEMPTS):
            existing = await self.store.get(physical_key)
            effective_ttl = self.default_ttl if ttl is None else _check_ttl(ttl)

            if existing is not None:
                try:
                    current = CacheEntry.from_bytes(physical_key, existing, self.serializer)
                except SerializationError:
                    current = None
                if current is not None:
                    if current.created_at > started_at:
                        logger.debug(f"Prefetch skipped, newer entry cached: {physical_key}")
                        return False
                    if current.ttl_seconds == 0:
                        effective_ttl = 0

            entry = self._entry(physical_key, value, effective_ttl, started_at, version)
            # Only lands if the entry checked above is still the one stored
            if await self.store.compare_and_set(
                physical_key, existing, entry.to_bytes(self.serializer), entry.ttl_seconds
            ):
                await self._tag(physical_key, tags)
                return True
            logger.debug(f"Prefetch raced with another write, re-checking: {physical_key}")

        logger.debug(f"Prefetch gave up after concurrent writes: {physical_key}")
        return False

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _resolve(self, key: LogicalKey) -> tuple[int, str]:
        """Current version and physical key of ``key``."""
        version = await self.invalidation.current_version(key)
        return version, self.codec.physical(key, version)

    async def _effective_ttl(self, physical_key: str, ttl: int | None) -> int:
        """Explicit TTLs win; defaults never turn a persistent entry into an expiring one."""
        if ttl is not None:
            return _check_ttl(ttl)
        if await self.store.ttl(physical_key) == 0:
            return 0
        return self.default_ttl

    async def _tag(self, physical_key: str, tags: tuple[str, ...]) -> None:
        for tag in tags:
            await self.invalidation.tag_keys(tag, physical_key)
