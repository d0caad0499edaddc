"""Tests for the strategy engine."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from cachecore.errors import SerializationError, StoreUnavailableError
from cachecore.keys import KeyCodec
from cachecore.observability.metrics import MetricsCollector
from cachecore.store.memory import InMemoryStore
from cachecore.strategies.engine import CacheResult, StrategyEngine, WriteStrategy
from cachecore.strategies.write_behind import WriteBehindConfig, WriteBehindQueue


@pytest.fixture
def flaky_engine(flaky_store, codec: KeyCodec, metrics: MetricsCollector, clock) -> StrategyEngine:
    return StrategyEngine(flaky_store, codec, metrics=metrics, clock=clock)


class TestCacheAside:
    """Test cache-aside reads."""

    async def test_miss_then_hit(self, engine: StrategyEngine, metrics: MetricsCollector) -> None:
        """A miss loads and caches; the next read is a hit."""
        loader = AsyncMock(return_value={"name": "Ada"})

        first = await engine.get("user:42", loader, ttl=60)
        second = await engine.get("user:42", loader, ttl=60)

        assert first == CacheResult(value={"name": "Ada"}, from_cache=False)
        assert second == CacheResult(value={"name": "Ada"}, from_cache=True)
        loader.assert_awaited_once()
        assert metrics.hits == 1
        assert metrics.misses == 1

    async def test_sync_loader(self, engine: StrategyEngine) -> None:
        """Plain functions work as loaders."""
        result = await engine.get("answer", lambda: 42)
        assert result.value == 42

    async def test_round_trip_after_put(self, engine: StrategyEngine) -> None:
        """A put value is served from the cache without loading."""
        await engine.put("cfg:theme", ["dark", "compact"], ttl=60)
        loader = AsyncMock()

        result = await engine.get("cfg:theme", loader)

        assert result == CacheResult(value=["dark", "compact"], from_cache=True)
        loader.assert_not_called()

    async def test_put_rejects_value_that_would_change(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec
    ) -> None:
        """A tuple would come back as a list, so put refuses it and caches nothing."""
        with pytest.raises(SerializationError) as exc_info:
            await engine.put("point", (1, 2), ttl=60)

        assert exc_info.value.key == codec.physical("point")
        assert await store.get(codec.physical("point")) is None

    async def test_ttl_boundary(self, engine: StrategyEngine, clock) -> None:
        """Entries are served until their TTL elapses, then reloaded."""
        loader = AsyncMock(return_value="v")
        await engine.get("k", loader, ttl=10)

        clock.advance(9)
        assert (await engine.get("k", loader, ttl=10)).from_cache is True

        clock.advance(1)
        assert (await engine.get("k", loader, ttl=10)).from_cache is False
        assert loader.await_count == 2

    async def test_loader_error_propagates(self, engine: StrategyEngine, store: InMemoryStore) -> None:
        """Loader failures reach the caller unchanged and nothing is cached."""
        loader = AsyncMock(side_effect=LookupError("source down"))

        with pytest.raises(LookupError, match="source down"):
            await engine.get("user:1", loader)

        assert len(store) == 0

    async def test_negative_ttl_rejected(self, engine: StrategyEngine) -> None:
        """TTLs must be >= 0."""
        with pytest.raises(ValueError):
            await engine.get("k", lambda: 1, ttl=-5)

    async def test_undecodable_entry_is_a_miss(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec, metrics: MetricsCollector
    ) -> None:
        """A corrupt entry is discarded and reloaded."""
        await store.set(codec.physical("user:1"), b"\x00garbage")

        result = await engine.get("user:1", lambda: "fresh")

        assert result == CacheResult(value="fresh", from_cache=False)
        assert metrics.errors == 1
        assert (await engine.get("user:1", lambda: "other")).value == "fresh"

    async def test_store_down_degrades_to_loader(
        self, flaky_engine: StrategyEngine, flaky_store, metrics: MetricsCollector
    ) -> None:
        """An unreachable store is treated as a miss."""
        flaky_store.fail("get")

        result = await flaky_engine.get("user:1", lambda: "from-source")

        assert result == CacheResult(value="from-source", from_cache=False)
        assert metrics.errors == 1
        assert metrics.misses == 1

        flaky_store.recover()
        assert len(flaky_store) == 0

    async def test_write_back_failure_not_raised(
        self, flaky_engine: StrategyEngine, flaky_store, metrics: MetricsCollector
    ) -> None:
        """A failed cache fill after a successful load is logged only."""
        flaky_store.fail("set")

        result = await flaky_engine.get("user:1", lambda: "v")

        assert result.value == "v"
        assert metrics.errors == 1


class TestSingleFlight:
    """Test load coalescing."""

    async def _concurrent_gets(self, engine: StrategyEngine, callers: int) -> tuple[list, int]:
        calls = 0
        gate = asyncio.Event()

        async def loader() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return "value"

        tasks = [asyncio.create_task(engine.get("hot", loader)) for _ in range(callers)]
        for _ in range(5):
            await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)
        return results, calls

    async def test_loader_called_once(
        self, store: InMemoryStore, codec: KeyCodec, metrics: MetricsCollector, clock
    ) -> None:
        """Concurrent misses share a single load."""
        engine = StrategyEngine(store, codec, metrics=metrics, single_flight=True, clock=clock)

        results, calls = await self._concurrent_gets(engine, 10)

        assert calls == 1
        assert {r.value for r in results} == {"value"}

    async def test_without_single_flight(self, engine: StrategyEngine) -> None:
        """Without coalescing every caller may load, with equal results."""
        results, calls = await self._concurrent_gets(engine, 10)

        assert calls == 10
        assert {r.value for r in results} == {"value"}

    async def test_failure_shared(
        self, store: InMemoryStore, codec: KeyCodec, metrics: MetricsCollector, clock
    ) -> None:
        """Waiters see the leader's loader failure."""
        engine = StrategyEngine(store, codec, metrics=metrics, single_flight=True, clock=clock)
        gate = asyncio.Event()

        async def loader() -> str:
            await gate.wait()
            raise RuntimeError("boom")

        tasks = [asyncio.create_task(engine.get("hot", loader)) for _ in range(3)]
        for _ in range(5):
            await asyncio.sleep(0)
        gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(o, RuntimeError) for o in outcomes)


class TestWriteThrough:
    """Test write-through puts."""

    async def test_writer_runs_before_cache(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec
    ) -> None:
        """The authoritative write happens first, then the cache write."""
        written = []

        async def writer(key, value) -> None:
            assert await store.get(codec.physical("user:1")) is None
            written.append((key, value))

        await engine.put("user:1", {"a": 1}, ttl=60, strategy=WriteStrategy.WRITE_THROUGH, writer=writer)

        assert written == [("user:1", {"a": 1})]
        assert (await engine.get("user:1", AsyncMock())).from_cache is True

    async def test_writer_failure_skips_cache(self, engine: StrategyEngine, store: InMemoryStore) -> None:
        """A failing writer propagates and leaves the cache untouched."""
        writer = AsyncMock(side_effect=ConnectionRefusedError("db down"))

        with pytest.raises(ConnectionRefusedError):
            await engine.put("user:1", "v", strategy=WriteStrategy.WRITE_THROUGH, writer=writer)

        assert len(store) == 0

    async def test_requires_writer(self, engine: StrategyEngine) -> None:
        """Write-through without a writer is a usage error."""
        with pytest.raises(ValueError):
            await engine.put("user:1", "v", strategy=WriteStrategy.WRITE_THROUGH)

    async def test_store_down_is_fatal(self, flaky_engine: StrategyEngine, flaky_store) -> None:
        """An unreachable cache fails the put after the writer succeeded."""
        writer = AsyncMock()
        flaky_store.fail("set")

        with pytest.raises(StoreUnavailableError):
            await flaky_engine.put("user:1", "v", ttl=60, strategy=WriteStrategy.WRITE_THROUGH, writer=writer)

        writer.assert_awaited_once_with("user:1", "v")


class TestWriteBehind:
    """Test write-behind puts."""

    async def test_cache_written_immediately(
        self, store: InMemoryStore, codec: KeyCodec, metrics: MetricsCollector, clock
    ) -> None:
        """The cache is updated before the deferred write lands."""
        queue = WriteBehindQueue(store, codec, WriteBehindConfig(workers=1), metrics=metrics)
        engine = StrategyEngine(store, codec, metrics=metrics, write_behind=queue, clock=clock)
        writer = AsyncMock()

        await engine.put("user:1", "v", ttl=60, strategy=WriteStrategy.WRITE_BEHIND, writer=writer)

        assert (await engine.get("user:1", AsyncMock())).value == "v"
        writer.assert_not_called()

        async with queue:
            await queue.drain()
        writer.assert_awaited_once_with("user:1", "v")

    async def test_requires_queue(self, engine: StrategyEngine) -> None:
        """Write-behind needs a configured queue."""
        with pytest.raises(RuntimeError):
            await engine.put("user:1", "v", strategy=WriteStrategy.WRITE_BEHIND, writer=AsyncMock())


class TestTagsAndVersions:
    """Test tagging and versioning through the engine."""

    async def test_tag_invalidation_clears_entries(self, engine: StrategyEngine) -> None:
        """All entries written with a tag miss after invalidating it."""
        for i in range(3):
            await engine.put(f"product:{i}", i, ttl=60, tags=["catalog"])
        await engine.get("product:9", lambda: 9, tags=["catalog"])

        assert await engine.invalidation.invalidate_tag("catalog") == 4

        for i in (0, 1, 2, 9):
            assert (await engine.get(f"product:{i}", lambda: None)).from_cache is False

    async def test_key_tagged_during_invalidation_stays_tagged(
        self, interleaving_engine: StrategyEngine, interleaving_store, codec: KeyCodec
    ) -> None:
        """A key tagged while a tag is being invalidated is cleared by the next pass."""
        await interleaving_engine.put("a", 1, ttl=60, tags=["g"])

        async def tag_concurrently() -> None:
            await interleaving_engine.put("b", 2, ttl=60, tags=["g"])

        interleaving_store.after("smembers", codec.tag("g"), tag_concurrently)

        assert await interleaving_engine.invalidation.invalidate_tag("g") == 1
        assert codec.physical("b") in await interleaving_engine.invalidation.tagged("g")

        assert await interleaving_engine.invalidation.invalidate_tag("g") == 1
        assert (await interleaving_engine.get("b", lambda: None)).from_cache is False

    async def test_version_bump_orphans_entry(self, engine: StrategyEngine) -> None:
        """After a bump, reads resolve to the new physical key."""
        await engine.put("doc:1", "old", ttl=60)
        await engine.invalidation.bump_version("doc:1")

        result = await engine.get("doc:1", lambda: "new")

        assert result == CacheResult(value="new", from_cache=False)

    async def test_version_bump_does_not_affect_inflight_read(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec
    ) -> None:
        """A read that resolved the old version completes against it."""
        gate = asyncio.Event()

        async def slow_loader() -> str:
            await gate.wait()
            return "old"

        task = asyncio.create_task(engine.get("doc:1", slow_loader))
        await asyncio.sleep(0)

        assert await engine.invalidation.bump_version("doc:1") == 2
        gate.set()

        assert (await task).value == "old"
        assert await store.get(codec.physical("doc:1", 1)) is not None
        assert await store.get(codec.physical("doc:1", 2)) is None
        assert (await engine.get("doc:1", lambda: "new")).value == "new"

    async def test_delete(self, engine: StrategyEngine) -> None:
        """delete() removes the current version."""
        await engine.put("k", 1, ttl=60)
        assert await engine.delete("k") is True
        assert await engine.delete("k") is False


class TestTtlPreservation:
    """A persistent entry is never silently given an expiry."""

    async def test_put_keeps_zero_ttl(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec
    ) -> None:
        """Overwriting a TTL-0 entry without a TTL keeps it persistent."""
        await engine.put("cfg", "a", ttl=0)
        await engine.put("cfg", "b")

        assert await store.ttl(codec.physical("cfg")) == 0

    async def test_put_uses_default_ttl(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec
    ) -> None:
        """Without an explicit TTL the default applies."""
        await engine.put("k", "a")
        assert await store.ttl(codec.physical("k")) == 3600


class TestPrefetch:
    """Test proactive population."""

    async def test_prefetch_writes_missing(self, engine: StrategyEngine) -> None:
        """Missing keys are populated."""
        result = await engine.prefetch({"a": lambda: 1, "b": AsyncMock(return_value=2)}, ttl=60)

        assert sorted(result.written) == ["test:k:a", "test:k:b"]
        assert (await engine.get("b", AsyncMock())).value == 2

    async def test_newer_entry_wins(self, engine: StrategyEngine, clock) -> None:
        """A prefetch never overwrites an entry written after its load began."""

        async def loader() -> str:
            clock.advance(1)
            await engine.put("a", "fresh", ttl=60)
            return "stale"

        result = await engine.prefetch({"a": loader}, ttl=60)

        assert result.skipped == ["test:k:a"]
        assert (await engine.get("a", AsyncMock())).value == "fresh"

    async def test_put_between_check_and_write_survives(
        self, interleaving_engine: StrategyEngine, interleaving_store, codec: KeyCodec, clock
    ) -> None:
        """A put landing after the prefetch checked the entry is not overwritten."""

        async def concurrent_put() -> None:
            clock.advance(1)
            await interleaving_engine.put("a", "fresh", ttl=60)

        interleaving_store.after("get", codec.physical("a"), concurrent_put)

        result = await interleaving_engine.prefetch({"a": lambda: "stale"}, ttl=60)

        assert result.skipped == ["test:k:a"]
        assert (await interleaving_engine.get("a", AsyncMock())).value == "fresh"

    async def test_older_entry_replaced(self, engine: StrategyEngine, clock) -> None:
        """Entries older than the prefetch load are refreshed."""
        await engine.put("a", "old", ttl=60)
        clock.advance(5)

        result = await engine.prefetch({"a": lambda: "new"}, ttl=60)

        assert result.written == ["test:k:a"]
        assert (await engine.get("a", AsyncMock())).value == "new"

    async def test_prefetch_keeps_zero_ttl(
        self, engine: StrategyEngine, store: InMemoryStore, codec: KeyCodec, clock
    ) -> None:
        """Refreshing a persistent entry keeps it persistent."""
        await engine.put("a", "x", ttl=0)
        clock.advance(1)

        await engine.prefetch({"a": lambda: "y"}, ttl=60)

        assert await store.ttl(codec.physical("a")) == 0

    async def test_failures_collected(self, engine: StrategyEngine, metrics: MetricsCollector) -> None:
        """A failing loader is reported without affecting the others."""
        result = await engine.prefetch(
            {"ok": lambda: 1, "bad": AsyncMock(side_effect=RuntimeError("nope"))}
        )

        assert result.written == ["test:k:ok"]
        assert result.failed == {"test:k:bad": "nope"}
        assert metrics.errors == 1


class TestRawAccess:
    """Test the physical-key helpers."""

    async def test_write_read_remove(self, engine: StrategyEngine, metrics: MetricsCollector) -> None:
        """Entries round-trip through write and read."""
        entry = await engine.write("test:sess:abc", {"u": 1}, ttl=30, created_at=5.0)

        loaded = await engine.read("test:sess:abc")

        assert loaded == entry
        assert loaded.created_at == 5.0
        assert metrics.hits == 1
        assert await engine.remove("test:sess:abc") is True
        assert await engine.read("test:sess:abc") is None
        assert metrics.misses == 1
