"""Tests for value serialization and the cache envelope."""

from dataclasses import dataclass
from datetime import datetime, timezone

import orjson
import pytest
from pydantic import BaseModel

from cachecore.errors import SerializationError
from cachecore.serialization import CacheEntry, OrjsonSerializer


class Product(BaseModel):
    sku: str
    price: float


@dataclass
class Point:
    x: int
    y: int


class TestOrjsonSerializer:
    """Test the default serializer."""

    @pytest.fixture
    def serializer(self) -> OrjsonSerializer:
        return OrjsonSerializer()

    def test_plain_values(self, serializer: OrjsonSerializer) -> None:
        """JSON-compatible values survive encoding."""
        value = {"name": "Ada", "tags": ["a", "b"], "count": 3, "ratio": 0.5, "ok": True}
        assert serializer.loads(serializer.dumps(value)) == value

    def test_pydantic_model(self, serializer: OrjsonSerializer) -> None:
        """Pydantic models are encoded through model_dump."""
        data = serializer.loads(serializer.dumps(Product(sku="X1", price=9.5)))
        assert data == {"sku": "X1", "price": 9.5}

    def test_dataclass_and_datetime(self, serializer: OrjsonSerializer) -> None:
        """Dataclasses and datetimes are encoded natively."""
        when = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
        data = serializer.loads(serializer.dumps({"at": when, "point": Point(1, 2)}))
        assert data == {"at": "2026-01-10T12:00:00+00:00", "point": {"x": 1, "y": 2}}

    def test_accepted_values_round_trip(self, serializer: OrjsonSerializer) -> None:
        """Whatever is accepted decodes equal to the original."""
        values = [None, 0, -1.5, "", "text", [], {}, [1, [2, [3]]], {"a": {"b": [None, True]}}]
        for value in values:
            assert serializer.loads(serializer.dumps(value)) == value

    @pytest.mark.parametrize(
        "value",
        [
            (1, 2),
            {"ids": {3}},
            {"ids": frozenset({3})},
            {1: "a"},
            [{"nested": {None: 1}}],
        ],
    )
    def test_lossy_containers_rejected(self, serializer: OrjsonSerializer, value) -> None:
        """Tuples, sets and non-string keys would not decode back, so they are refused."""
        with pytest.raises(SerializationError):
            serializer.dumps(value)

    def test_unserializable_value_raises(self, serializer: OrjsonSerializer) -> None:
        """Unsupported types raise SerializationError."""
        with pytest.raises(SerializationError):
            serializer.dumps(object())

    def test_invalid_payload_raises(self, serializer: OrjsonSerializer) -> None:
        """Malformed bytes raise SerializationError."""
        with pytest.raises(SerializationError):
            serializer.loads(b"{not json")


class TestCacheEntry:
    """Test the stored envelope."""

    def test_envelope_format(self) -> None:
        """Entries are stored with their metadata."""
        entry = CacheEntry("cc:k:user:v1", {"a": 1}, created_at=100.5, ttl_seconds=60)
        data = orjson.loads(entry.to_bytes(OrjsonSerializer()))
        assert data == {"value": {"a": 1}, "created_at": 100.5, "ttl": 60, "version": 1}

    def test_from_bytes(self) -> None:
        """Envelopes decode back into entries."""
        payload = orjson.dumps({"value": [1, 2], "created_at": 5.0, "ttl": 0, "version": 3})
        entry = CacheEntry.from_bytes("cc:k:list:v3", payload, OrjsonSerializer())
        assert entry.value == [1, 2]
        assert entry.created_at == 5.0
        assert entry.ttl_seconds == 0
        assert entry.version == 3

    def test_non_envelope_payload_rejected(self) -> None:
        """Bare values written by other clients are not envelopes."""
        with pytest.raises(SerializationError) as exc_info:
            CacheEntry.from_bytes("cc:k:raw:v1", b'"just a string"', OrjsonSerializer())
        assert exc_info.value.key == "cc:k:raw:v1"

    def test_undecodable_payload_carries_key(self) -> None:
        """Decode errors name the key they came from."""
        with pytest.raises(SerializationError) as exc_info:
            CacheEntry.from_bytes("cc:k:bad:v1", b"\xff\xfe", OrjsonSerializer())
        assert "cc:k:bad:v1" in str(exc_info.value)

    def test_negative_ttl_rejected(self) -> None:
        """TTLs are whole seconds >= 0."""
        with pytest.raises(ValueError):
            CacheEntry("k", 1, created_at=0.0, ttl_seconds=-1)

    def test_version_starts_at_one(self) -> None:
        """Version 0 is invalid."""
        with pytest.raises(ValueError):
            CacheEntry("k", 1, created_at=0.0, version=0)
