"""Interval-driven cache prefetching.

Refreshes registered keys in the background so hot entries are populated
before callers ask for them:
- Named prefetch jobs, each a set of keys and their loaders
- Per-job interval and TTL
- Manual triggering for warm-up at startup

Example:
    scheduler = PrefetchScheduler(engine)
    scheduler.add("top-products", {"product:1": load_p1, "product:2": load_p2}, interval=60)

    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from cachecore.keys import LogicalKey
from cachecore.strategies.engine import Loader, PrefetchResult, StrategyEngine

logger = logging.getLogger(__name__)


@dataclass
class PrefetchJob:
    """A recurring prefetch definition."""

    name: str
    loaders: dict[LogicalKey, Loader]
    interval: float
    ttl: int | None = None
    tags: tuple[str, ...] = ()
    enabled: bool = True
    last_run: float | None = None
    next_run: float | None = None
    last_result: PrefetchResult | None = field(default=None, repr=False)


class PrefetchScheduler:
    """Runs prefetch jobs on their intervals without blocking callers.

    Each due job runs as its own task, so a slow loader delays only its own
    job and never the scheduler loop or caller-issued reads.
    """

    def __init__(
        self,
        engine: StrategyEngine,
        check_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.check_interval = check_interval
        self._clock = clock
        self._jobs: dict[str, PrefetchJob] = {}
        self._running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: dict[str, asyncio.Task[PrefetchResult]] = {}

    def add(
        self,
        name: str,
        loaders: Mapping[LogicalKey, Loader],
        interval: float,
        ttl: int | None = None,
        tags: tuple[str, ...] = (),
        enabled: bool = True,
    ) -> PrefetchJob:
        """Register a prefetch job; the first run is due immediately.

        Args:
            name: Unique job name
            loaders: Logical key -> loader
            interval: Seconds between runs
            ttl: TTL for prefetched entries (None uses the engine default)
            tags: Tags attached to prefetched entries
            enabled: Whether the job runs on schedule

        Returns:
            PrefetchJob instance
        """
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")

        job = PrefetchJob(
            name=name,
            loaders=dict(loaders),
            interval=interval,
            ttl=ttl,
            tags=tuple(tags),
            enabled=enabled,
            next_run=self._clock(),
        )
        self._jobs[name] = job
        logger.info(f"Prefetch job added: {name} ({len(job.loaders)} keys every {interval}s)")
        return job

    def remove(self, name: str) -> bool:
        """Remove a prefetch job. Returns False if not found."""
        if name in self._jobs:
            del self._jobs[name]
            logger.info(f"Prefetch job removed: {name}")
            return True
        return False

    def enable(self, name: str) -> bool:
        if name in self._jobs:
            self._jobs[name].enabled = True
            return True
        return False

    def disable(self, name: str) -> bool:
        if name in self._jobs:
            self._jobs[name].enabled = False
            return True
        return False

    def list_jobs(self) -> list[PrefetchJob]:
        return list(self._jobs.values())

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="prefetch-scheduler")
        logger.info("Prefetch scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler and wait for running jobs."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        logger.info("Prefetch scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self.check_schedules()
            await asyncio.sleep(self.check_interval)

    def check_schedules(self) -> list[str]:
        """Launch every enabled job that is due and not already running.

        Returns:
            Names of the jobs launched
        """
        now = self._clock()
        launched = []

        for name, job in self._jobs.items():
            if not job.enabled or name in self._inflight:
                continue
            if job.next_run is not None and now >= job.next_run:
                job.last_run = now
                job.next_run = now + job.interval
                task = asyncio.create_task(self._run_job(job), name=f"prefetch-{name}")
                self._inflight[name] = task
                task.add_done_callback(lambda _t, n=name: self._inflight.pop(n, None))
                launched.append(name)

        return launched

    async def _run_job(self, job: PrefetchJob) -> PrefetchResult:
        try:
            result = await self.engine.prefetch(job.loaders, ttl=job.ttl, tags=job.tags)
        except Exception as e:
            # engine.prefetch collects per-key failures; this is a store-level fault
            logger.error(f"Prefetch job {job.name} failed: {e}")
            result = PrefetchResult(failed={job.name: str(e)})
        job.last_result = result
        return result

    async def run_now(self, name: str) -> PrefetchResult | None:
        """Run a job immediately and wait for it. Returns None if unknown."""
        job = self._jobs.get(name)
        if job is None:
            return None

        logger.info(f"Manually triggered prefetch job: {name}")
        job.last_run = self._clock()
        return await self._run_job(job)
