"""Value serialization for cache payloads.

Values are stored inside a small orjson envelope so that every physical entry
carries its own creation time, TTL and version:

    {"value": ..., "created_at": 1700000000.25, "ttl": 300, "version": 1}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import orjson
from pydantic import BaseModel

from cachecore.errors import SerializationError


class Serializer(Protocol):
    """Converts domain values to and from bytes."""

    def dumps(self, value: Any) -> bytes: ...

    def loads(self, data: bytes) -> Any: ...


def _default(obj: Any) -> Any:
    """Fallback encoder for types orjson does not handle natively."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    raise TypeError(f"Type is not serializable: {type(obj).__name__}")


def _reject_lossy(value: Any, path: str = "$") -> None:
    """Refuse containers that JSON would hand back as something else."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError(f"Dict key {key!r} at {path} is not a string")
            _reject_lossy(item, f"{path}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _reject_lossy(item, f"{path}[{index}]")
    elif isinstance(value, (tuple, set, frozenset)):
        raise SerializationError(
            f"{type(value).__name__} at {path} would decode as a list; store a list instead"
        )


class OrjsonSerializer:
    """JSON serializer backed by orjson.

    Handles dataclasses, datetimes, UUIDs and pydantic models, which decode
    as their plain JSON form. Tuples, sets and non-string dict keys are
    rejected rather than silently changed.
    """

    def dumps(self, value: Any) -> bytes:
        _reject_lossy(value)
        try:
            return orjson.dumps(value, default=_default)
        except TypeError as e:
            raise SerializationError(f"Cannot encode value: {e}") from e

    def loads(self, data: bytes) -> Any:
        try:
            return orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise SerializationError(f"Cannot decode payload: {e}") from e


@dataclass
class CacheEntry:
    """A single cached value as it lives in the store."""

    physical_key: str
    value: Any
    created_at: float
    ttl_seconds: int = 0
    version: int = 1

    def __post_init__(self) -> None:
        if self.ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {self.ttl_seconds}")
        if self.version < 1:
            raise ValueError(f"version must be >= 1, got {self.version}")

    def to_bytes(self, serializer: Serializer) -> bytes:
        """Serialize the envelope."""
        try:
            return serializer.dumps(
                {
                    "value": self.value,
                    "created_at": self.created_at,
                    "ttl": self.ttl_seconds,
                    "version": self.version,
                }
            )
        except SerializationError as e:
            raise SerializationError(str(e), key=self.physical_key) from e

    @classmethod
    def from_bytes(cls, physical_key: str, data: bytes, serializer: Serializer) -> CacheEntry:
        """Deserialize an envelope read from ``physical_key``."""
        try:
            parsed = serializer.loads(data)
        except SerializationError as e:
            raise SerializationError(str(e), key=physical_key) from e

        if not isinstance(parsed, dict) or "value" not in parsed:
            raise SerializationError("Payload is not a cache envelope", key=physical_key)

        return cls(
            physical_key=physical_key,
            value=parsed["value"],
            created_at=float(parsed.get("created_at", 0.0)),
            ttl_seconds=int(parsed.get("ttl", 0)),
            version=int(parsed.get("version", 1)),
        )
