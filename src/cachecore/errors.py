"""Error taxonomy for cachecore.

Every failure the layer can surface maps onto one of these kinds:

- StoreUnavailableError: the key-value store could not be reached (transient)
- SerializationError: a payload could not be encoded or decoded
- LoaderError: a deferred writer failed outside the caller's own call path
- QueueFullError: write-behind backpressure timed out
- RateLimitExceededError: raised only by ``RateLimiter.check_or_raise``

Loader and writer exceptions raised inside a caller's own ``get``/``put`` call
are propagated unchanged and are never wrapped.

DependencyCycleWarning is non-fatal. It is logged and attached to
invalidation reports, never raised.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base class for all cachecore errors."""


class StoreUnavailableError(CacheError):
    """The backing key-value store is unreachable or timed out."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store unavailable during {operation}{detail}")


class SerializationError(CacheError):
    """A value could not be encoded to, or decoded from, its wire form."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        if key is not None:
            message = f"{message} (key={key})"
        super().__init__(message)


class LoaderError(CacheError):
    """A deferred authoritative write failed after all retry attempts."""

    def __init__(self, key: str, attempts: int, cause: BaseException):
        self.key = key
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Writer failed for {key} after {attempts} attempts: {cause}")


class QueueFullError(CacheError):
    """The write-behind queue stayed full for the whole backpressure timeout."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Write-behind queue full, dropped write for {key} after {timeout}s")


class RateLimitExceededError(CacheError):
    """Raised when a caller asks for an exception instead of a denied decision."""

    def __init__(self, identity: str, limit: int, window_seconds: int, reset_at: int):
        self.identity = identity
        self.limit = limit
        self.window_seconds = window_seconds
        self.reset_at = reset_at
        super().__init__(
            f"Rate limit exceeded for '{identity}' "
            f"(limit={limit}, window_seconds={window_seconds}, reset_at={reset_at})"
        )


class DependencyCycleWarning(UserWarning):
    """A dependency cycle was found while walking invalidation edges."""

    def __init__(self, key: str, path: list[str]):
        self.key = key
        self.path = path
        super().__init__(f"Dependency cycle at {key}: {' -> '.join(path)}")
