"""Write-behind queue for deferred authoritative writes.

Provides a bounded in-process queue with:
- Backpressure: producers block up to ``put_timeout`` then get QueueFullError
- A pool of worker tasks draining the queue
- Per-key sequencing: the last write enqueued for a key wins
- Retry with bounded exponential backoff
- Degraded flag + error channel once retries are exhausted

Example:
    queue = WriteBehindQueue(store, codec, WriteBehindConfig(workers=4))
    queue.add_handler(alert_on_failure)
    await queue.start()

    await queue.enqueue("user:42", {"name": "Ada"}, save_user)

    await queue.stop()  # drains pending writes first
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

import orjson

from cachecore.errors import LoaderError, QueueFullError, StoreUnavailableError
from cachecore.keys import KeyCodec, LogicalKey
from cachecore.observability.metrics import MetricsCollector, get_metrics
from cachecore.store.base import CacheStore

logger = logging.getLogger(__name__)

# Writer receives the logical key and the value to persist
Writer = Callable[[LogicalKey, Any], Awaitable[None] | None]


@dataclass
class WriteBehindConfig:
    """Write-behind queue configuration."""

    queue_size: int = 10000
    workers: int = 4

    # Backpressure: seconds a producer may block on a full queue (0 = fail fast)
    put_timeout: float = 1.0

    # Retry behavior
    max_retries: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0


@dataclass
class DeferredWrite:
    """A pending authoritative write."""

    key: str
    logical_key: LogicalKey
    value: Any
    writer: Writer
    seq: int
    enqueued_at: float
    attempts: int = 0


@dataclass
class WriteBehindFailure:
    """Published on the error channel when a deferred write is given up on."""

    key: str
    value: Any
    attempts: int
    error: LoaderError
    failed_at: float = field(default_factory=time.time)

    def to_bytes(self) -> bytes:
        return orjson.dumps(
            {
                "key": self.key,
                "attempts": self.attempts,
                "error": str(self.error.cause),
                "failed_at": self.failed_at,
            }
        )


FailureHandler = Callable[[WriteBehindFailure], Awaitable[None]]


class _KeyLocks:
    """Reference-counted asyncio locks, one per key."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (asyncio.Lock(), 0))
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


class WriteBehindQueue:
    """Bounded multi-producer, multi-consumer queue of deferred writes.

    Delivery is at-least-once: a writer may be called again for a value it
    already persisted if an earlier attempt raised after writing.
    Superseded writes (an older sequence number for a key whose newer write
    already landed) are skipped.
    """

    def __init__(
        self,
        store: CacheStore,
        codec: KeyCodec,
        config: WriteBehindConfig | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.codec = codec
        self.config = config or WriteBehindConfig()
        self.metrics = metrics or get_metrics()
        self._clock = clock
        self._sleep = sleep
        self._queue: asyncio.Queue[DeferredWrite] = asyncio.Queue(maxsize=self.config.queue_size)
        self._handlers: list[FailureHandler] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._seq = 0
        # Per-key bookkeeping, dropped once a key has nothing queued
        self._pending: dict[str, int] = {}
        self._applied_seq: dict[str, int] = {}
        self._key_locks = _KeyLocks()
        self._degraded: set[str] = set()
        self.failures: asyncio.Queue[WriteBehindFailure] = asyncio.Queue()

    def add_handler(self, handler: FailureHandler) -> None:
        """Register a handler for exhausted writes."""
        self._handlers.append(handler)
        handler_name = getattr(handler, "__name__", handler.__class__.__name__)
        logger.info(f"Registered write-behind failure handler: {handler_name}")

    @property
    def pending_count(self) -> int:
        """Number of writes waiting for a worker."""
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker pool."""
        if self._running:
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"write-behind-{i}")
            for i in range(self.config.workers)
        ]
        logger.info(f"Write-behind queue started with {self.config.workers} workers")

    async def stop(self, drain: bool = True) -> None:
        """Stop the worker pool, optionally waiting for pending writes."""
        if drain and self._running:
            await self.drain()

        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.pending_count:
            logger.warning(f"Write-behind queue stopped with {self.pending_count} pending writes")
        logger.info("Write-behind queue stopped")

    async def drain(self) -> None:
        """Wait until every enqueued write has been processed."""
        await self._queue.join()

    async def enqueue(self, key: LogicalKey, value: Any, writer: Writer) -> int:
        """Queue an authoritative write, applying backpressure when full.

        Returns:
            The write's sequence number

        Raises:
            QueueFullError: queue stayed full for ``put_timeout`` seconds
        """
        rendered = self.codec.logical(key)
        self._seq += 1
        item = DeferredWrite(
            key=rendered,
            logical_key=key,
            value=value,
            writer=writer,
            seq=self._seq,
            enqueued_at=self._clock(),
        )

        # Counted before the put: a worker may pick the item up before put returns
        self._pending[rendered] = self._pending.get(rendered, 0) + 1
        try:
            if self.config.put_timeout <= 0:
                self._queue.put_nowait(item)
            else:
                await asyncio.wait_for(self._queue.put(item), timeout=self.config.put_timeout)
        except (asyncio.QueueFull, TimeoutError) as e:
            self._release(rendered)
            self.metrics.record_error("QueueFullError", namespace="write_behind")
            logger.error(f"Write-behind queue full, rejecting write for {rendered}")
            raise QueueFullError(rendered, self.config.put_timeout) from e

        logger.debug(f"Deferred write queued: {rendered} (seq {item.seq})")
        return item.seq

    async def _worker_loop(self, worker_id: int) -> None:
        """Main loop for one consumer."""
        while self._running:
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                await self._process(item)
            except asyncio.CancelledError:
                self._queue.task_done()
                break
            except Exception:
                logger.exception(f"Write-behind worker {worker_id} failed on {item.key}")
            self._queue.task_done()

    async def _process(self, item: DeferredWrite) -> None:
        """Apply one deferred write with retries, in per-key sequence order."""
        async with self._key_locks.hold(item.key):
            try:
                await self._apply(item)
            finally:
                self._release(item.key)

    def _release(self, key: str) -> None:
        remaining = self._pending.get(key, 1) - 1
        if remaining > 0:
            self._pending[key] = remaining
        else:
            self._pending.pop(key, None)
            self._applied_seq.pop(key, None)

    async def _apply(self, item: DeferredWrite) -> None:
        if item.seq < self._applied_seq.get(item.key, 0):
            logger.debug(f"Skipping superseded write: {item.key} (seq {item.seq})")
            return

        last_error: BaseException | None = None
        for attempt in range(1, self.config.max_retries + 1):
            item.attempts = attempt
            try:
                result = item.writer(item.logical_key, item.value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                last_error = e
                if attempt < self.config.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Deferred write failed: {item.key} "
                        f"(attempt {attempt}/{self.config.max_retries}), retrying in {delay}s"
                    )
                    await self._sleep(delay)
                continue

            self._applied_seq[item.key] = item.seq
            await self._recover(item)
            logger.debug(f"Deferred write applied: {item.key} (seq {item.seq})")
            return

        assert last_error is not None
        await self._give_up(item, last_error)

    async def _recover(self, item: DeferredWrite) -> None:
        """Clear the degraded flag after a success, even one left by an earlier process."""
        try:
            if await self.is_degraded(item.logical_key):
                await self.clear_degraded(item.logical_key)
                logger.info(f"Deferred writes recovered for {item.key}")
        except StoreUnavailableError as e:
            logger.warning(f"Could not clear degraded flag for {item.key}: {e}")

    def _backoff(self, attempt: int) -> float:
        delay = self.config.retry_base_delay * (2 ** (attempt - 1))
        return float(min(delay, self.config.retry_max_delay))

    async def _give_up(self, item: DeferredWrite, cause: BaseException) -> None:
        """Flag the key degraded and publish the failure."""
        error = LoaderError(item.key, item.attempts, cause)
        failure = WriteBehindFailure(
            key=item.key,
            value=item.value,
            attempts=item.attempts,
            error=error,
            failed_at=self._clock(),
        )

        self._degraded.add(item.key)
        self.metrics.record_error("LoaderError", namespace="write_behind")
        logger.error(f"Deferred write exhausted retries: {error}")

        try:
            await self.store.set(self.codec.degraded(item.logical_key), failure.to_bytes())
        except StoreUnavailableError as e:
            logger.error(f"Could not persist degraded flag for {item.key}: {e}")

        await self.failures.put(failure)
        for handler in self._handlers:
            try:
                await handler(failure)
            except Exception as e:
                logger.error(f"Write-behind failure handler failed: {e}")

    async def is_degraded(self, key: LogicalKey) -> bool:
        """Whether a deferred write for ``key`` was given up on."""
        if self.codec.logical(key) in self._degraded:
            return True
        return await self.store.get(self.codec.degraded(key)) is not None

    async def clear_degraded(self, key: LogicalKey) -> None:
        self._degraded.discard(self.codec.logical(key))
        await self.store.delete(self.codec.degraded(key))

    async def __aenter__(self) -> WriteBehindQueue:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()
