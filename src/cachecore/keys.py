"""Cache key schema for cachecore.

Key format: {prefix}:{space}:{component}[:{component}...][:v{version}]

Where:
- prefix: namespace shared by every key this layer writes (default "cc")
- space: "k" (cached values), "tag", "ver", "dep", "rl", "sess", "degraded"
- component: logical key parts; unsafe parts are rendered as "~" + base64url
- version: appended to value keys only, see InvalidationManager.bump_version

A logical key is either a tuple of components or a string. Strings are split
on ":" so "user:42" and ("user", "42") name the same entry.
"""

from __future__ import annotations

import base64
import re
from typing import Union

LogicalKey = Union[str, tuple[str, ...]]

SEPARATOR = ":"
ENCODED_MARKER = "~"

_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9_.\-/@+=]+$")


def encode_component(component: str) -> str:
    """Render one component so it can never be confused with another."""
    if not component:
        raise ValueError("Key components must be non-empty")
    if _SAFE_COMPONENT.match(component):
        return component
    encoded = base64.urlsafe_b64encode(component.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{ENCODED_MARKER}{encoded}"


def decode_component(rendered: str) -> str:
    """Inverse of encode_component."""
    if not rendered.startswith(ENCODED_MARKER):
        return rendered
    body = rendered[1:]
    padding = "=" * (-len(body) % 4)
    return base64.urlsafe_b64decode(body + padding).decode("utf-8")


class KeyCodec:
    """Builds physical store keys from logical identities."""

    VALUE = "k"
    TAG = "tag"
    VERSION = "ver"
    DEPENDENCY = "dep"
    RATE = "rl"
    SESSION = "sess"
    DEGRADED = "degraded"

    def __init__(self, prefix: str = "cc"):
        if not prefix or not _SAFE_COMPONENT.match(prefix):
            raise ValueError(f"Invalid key prefix: {prefix!r}")
        self.prefix = prefix

    @staticmethod
    def components(key: LogicalKey) -> tuple[str, ...]:
        """Normalise a logical key into its component tuple."""
        if isinstance(key, str):
            parts = tuple(key.split(SEPARATOR))
        else:
            parts = tuple(key)
        if not parts or any(not p for p in parts):
            raise ValueError(f"Invalid logical key: {key!r}")
        return parts

    def _render(self, space: str, *parts: str) -> str:
        return SEPARATOR.join([self.prefix, space, *(encode_component(p) for p in parts)])

    def logical(self, key: LogicalKey) -> str:
        """Canonical string form of a logical key (without version)."""
        return self._render(self.VALUE, *self.components(key))

    def build(self, *parts: str) -> str:
        """Key for a value identified by ``parts``."""
        return self._render(self.VALUE, *self.components(parts))

    @staticmethod
    def versioned(rendered_key: str, version: int) -> str:
        """Physical key of a specific version of a value."""
        if version < 1:
            raise ValueError(f"Versions start at 1, got {version}")
        return f"{rendered_key}{SEPARATOR}v{version}"

    def physical(self, key: LogicalKey, version: int = 1) -> str:
        return self.versioned(self.logical(key), version)

    def tag(self, tag: str) -> str:
        """Set of physical keys carrying ``tag``."""
        return self._render(self.TAG, tag)

    def version_counter(self, key: LogicalKey) -> str:
        """Counter of version bumps for a logical key."""
        return self._render(self.VERSION, *self.components(key))

    def depends_on(self, key: LogicalKey) -> str:
        """Forward edges: keys that ``key`` depends on."""
        return self._render(self.DEPENDENCY, "on", *self.components(key))

    def dependents_of(self, key: LogicalKey) -> str:
        """Reverse edges: keys that depend on ``key``."""
        return self._render(self.DEPENDENCY, "by", *self.components(key))

    def rate_window(self, identity: str, bucket: int) -> str:
        """Counter for one rate-limit bucket of ``identity``."""
        return self._render(self.RATE, identity, str(bucket))

    def session(self, session_id: str) -> str:
        return self._render(self.SESSION, session_id)

    def degraded(self, key: LogicalKey) -> str:
        """Marker for a value whose deferred write was given up on."""
        return self._render(self.DEGRADED, *self.components(key))

    def parse(self, key: str, versioned: bool = True) -> dict[str, object] | None:
        """Parse a physical key into its space and decoded components.

        Pass ``versioned=False`` for rendered logical keys, whose last
        component must not be read as a version suffix. Returns None if the
        key doesn't belong to this prefix.
        """
        parts = key.split(SEPARATOR)
        if len(parts) < 3 or parts[0] != self.prefix:
            return None

        space = parts[1]
        rest = parts[2:]
        version: int | None = None
        if versioned and space == self.VALUE and len(rest) > 1 and re.fullmatch(r"v\d+", rest[-1]):
            version = int(rest[-1][1:])
            rest = rest[:-1]

        return {
            "prefix": parts[0],
            "space": space,
            "components": tuple(decode_component(p) for p in rest),
            "version": version,
        }
