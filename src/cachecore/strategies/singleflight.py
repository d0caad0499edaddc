"""Per-key coalescing of concurrent loads.

When many coroutines miss the same key at once, only the first runs the
loader; the rest await its outcome. Successes and failures are both shared,
so a failing loader fails every waiter with the same exception. If the
leading caller is cancelled, one of the waiters takes over the load.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

# Result handed to waiters when the leading call was cancelled
_ABANDONED = object()


class SingleFlight:
    """Runs at most one in-flight call per key."""

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Future[Any]] = {}

    @property
    def in_flight(self) -> int:
        return len(self._calls)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` for ``key`` unless a call is already running, then share it."""
        while True:
            existing = self._calls.get(key)
            if existing is None:
                return await self._lead(key, fn)

            logger.debug(f"Joining in-flight load for {key}")
            result = await asyncio.shield(existing)
            if result is not _ABANDONED:
                return result
            logger.debug(f"In-flight load for {key} was cancelled, retrying")

    async def _lead(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._calls[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            # Only the leader was cancelled; waiters retry instead
            future.set_result(_ABANDONED)
            raise
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not logged by asyncio
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._calls.pop(key, None)
