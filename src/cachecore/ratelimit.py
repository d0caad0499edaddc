"""Quota tracking on top of the store's atomic counters.

Two algorithms share one contract, ``check_rate(identity, limit, window)``:

- FIXED_WINDOW: one counter per ``floor(now / window)`` bucket. Simple and
  cheap, but a burst straddling a bucket edge can reach twice the limit.
- SLIDING_WINDOW: weights the previous bucket's count by how much of it still
  overlaps the trailing window, which smooths out the edge burst.

Counters are only ever incremented with the store's atomic ``increment``, so
concurrent callers never undercount. A window's counter is never reset by
hand; it disappears when its TTL lapses and the next bucket starts at zero.

Denied checks are not errors: they return ``allowed=False``. Use
``check_or_raise`` for exception-based control flow.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from cachecore.errors import RateLimitExceededError, StoreUnavailableError
from cachecore.keys import KeyCodec
from cachecore.observability.logging import LogContext
from cachecore.observability.metrics import MetricsCollector, get_metrics
from cachecore.store.base import BatchOp, CacheStore

logger = logging.getLogger(__name__)


class RateLimitAlgorithm(str, Enum):
    """Counting scheme used by the limiter."""

    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"


@dataclass(frozen=True)
class RateDecision:
    """Result of one rate check."""

    allowed: bool
    remaining: int
    reset_at: int
    # True when the decision came from the fail-open/fail-closed fallback
    degraded: bool = False


@dataclass(frozen=True)
class RateWindow:
    """Read-only view of one identity's current window."""

    identity: str
    window_start: int
    count: int
    limit: int
    window_size_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """Fixed- or sliding-window rate limiter.

    Args:
        store: Store providing atomic ``increment``
        codec: Key codec used to name window counters
        algorithm: Counting scheme
        fail_open: Decision when the store is unreachable (True = allow)
        clock: Seconds since the epoch
    """

    def __init__(
        self,
        store: CacheStore,
        codec: KeyCodec,
        algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW,
        fail_open: bool = True,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.codec = codec
        self.algorithm = RateLimitAlgorithm(algorithm)
        self.fail_open = fail_open
        self.metrics = metrics or get_metrics()
        self._clock = clock

    async def check_rate(
        self, identity: str, limit: int, window_size_seconds: int
    ) -> RateDecision:
        """Count one request for ``identity`` and decide whether it is allowed."""
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        if window_size_seconds <= 0:
            raise ValueError(f"window_size_seconds must be > 0, got {window_size_seconds}")

        now = self._clock()
        bucket = int(now // window_size_seconds)
        reset_at = (bucket + 1) * window_size_seconds

        with LogContext(identity=identity, operation="check_rate"):
            try:
                if self.algorithm is RateLimitAlgorithm.SLIDING_WINDOW:
                    decision = await self._sliding_window(
                        identity, limit, window_size_seconds, now, bucket, reset_at
                    )
                else:
                    decision = await self._fixed_window(
                        identity, limit, window_size_seconds, bucket, reset_at
                    )
            except StoreUnavailableError as e:
                self.metrics.record_error(type(e).__name__, namespace="ratelimit")
                mode = "allowing" if self.fail_open else "denying"
                logger.warning(f"Rate limit store unavailable, {mode} request: {e}")
                return RateDecision(
                    allowed=self.fail_open,
                    remaining=limit if self.fail_open else 0,
                    reset_at=reset_at,
                    degraded=True,
                )

            if not decision.allowed:
                logger.info(f"Rate limit exceeded for {identity} (limit {limit}/{window_size_seconds}s)")
            return decision

    async def _fixed_window(
        self, identity: str, limit: int, window: int, bucket: int, reset_at: int
    ) -> RateDecision:
        key = self.codec.rate_window(identity, bucket)
        count = await self.store.increment(key)
        if count == 1:
            await self.store.expire(key, window)

        return RateDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )

    async def _sliding_window(
        self, identity: str, limit: int, window: int, now: float, bucket: int, reset_at: int
    ) -> RateDecision:
        current_key = self.codec.rate_window(identity, bucket)
        previous_key = self.codec.rate_window(identity, bucket - 1)

        incremented, previous = await self.store.batch(
            [BatchOp.increment(current_key), BatchOp.get(previous_key)]
        )
        if not incremented.ok:
            raise incremented.error  # type: ignore[misc]
        count = int(incremented.value)
        if count == 1:
            # The bucket is still read as "previous" during the next window
            await self.store.expire(current_key, window * 2)

        previous_count = int(previous.value) if previous.ok and previous.value is not None else 0
        elapsed = (now - bucket * window) / window
        weighted = previous_count * (1.0 - elapsed) + count

        return RateDecision(
            allowed=weighted <= limit,
            remaining=max(0, limit - math.ceil(weighted)),
            reset_at=reset_at,
        )

    async def check_or_raise(self, identity: str, limit: int, window_size_seconds: int) -> RateDecision:
        """Like ``check_rate`` but raises RateLimitExceededError when denied."""
        decision = await self.check_rate(identity, limit, window_size_seconds)
        if not decision.allowed:
            raise RateLimitExceededError(identity, limit, window_size_seconds, decision.reset_at)
        return decision

    async def get_window(self, identity: str, limit: int, window_size_seconds: int) -> RateWindow:
        """Snapshot the current fixed window without counting a request."""
        bucket = int(self._clock() // window_size_seconds)
        raw = await self.store.get(self.codec.rate_window(identity, bucket))
        return RateWindow(
            identity=identity,
            window_start=bucket * window_size_seconds,
            count=int(raw) if raw is not None else 0,
            limit=limit,
            window_size_seconds=window_size_seconds,
        )
