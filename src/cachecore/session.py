"""Sliding-expiration sessions stored through the strategy engine.

Sessions live under ``{prefix}:sess:{session_id}`` with a TTL that is
extended on every successful load, so an active session never expires and
an idle one disappears after ``ttl`` seconds.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from cachecore.errors import SerializationError
from cachecore.strategies.engine import StrategyEngine

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 1800
SESSION_ID_BYTES = 32  # 256 bits of entropy


@dataclass
class Session:
    """A user session."""

    session_id: str
    user_id: str
    created_at: float
    last_accessed_at: float
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "attributes": self.attributes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        try:
            return cls(
                session_id=data["session_id"],
                user_id=data["user_id"],
                created_at=float(data["created_at"]),
                last_accessed_at=float(data["last_accessed_at"]),
                attributes=dict(data.get("attributes") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Malformed session payload: {e}") from e


class SessionStore:
    """Create, load, refresh and destroy sessions.

    ``load`` returns None for unknown or expired sessions. It never returns
    an empty placeholder, so callers can tell "no session" from "a session
    with no attributes".
    """

    def __init__(
        self,
        engine: StrategyEngine,
        ttl: int = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"Session ttl must be > 0, got {ttl}")
        self.engine = engine
        self.ttl = ttl
        self._clock = clock

    def _key(self, session_id: str) -> str:
        return self.engine.codec.session(session_id)

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_urlsafe(SESSION_ID_BYTES)

    async def create(self, user_id: str, attributes: Mapping[str, Any] | None = None) -> str:
        """Create a session for ``user_id`` and return its id."""
        now = self._clock()
        session = Session(
            session_id=self.new_session_id(),
            user_id=str(user_id),
            created_at=now,
            last_accessed_at=now,
            attributes=dict(attributes or {}),
        )
        await self._save(session)
        logger.info(f"Session created for user {session.user_id}")
        return session.session_id

    async def load(self, session_id: str) -> Session | None:
        """Load a session and slide its expiry forward.

        The refresh only lands while the session still exists, so a
        ``destroy`` racing with this call is never undone.
        """
        entry = await self.engine.read(self._key(session_id))
        if entry is None:
            return None

        session = Session.from_dict(entry.value)
        session.last_accessed_at = self._clock()
        if not await self._refresh(session):
            logger.debug("Session destroyed while loading")
            return None
        return session

    async def touch(self, session_id: str) -> bool:
        """Refresh a session's expiry. Returns False if it no longer exists."""
        return await self.load(session_id) is not None

    async def update(self, session_id: str, attributes: Mapping[str, Any]) -> Session | None:
        """Merge ``attributes`` into an existing session."""
        session = await self.load(session_id)
        if session is None:
            return None
        session.attributes.update(attributes)
        if not await self._refresh(session):
            return None
        return session

    async def destroy(self, session_id: str) -> bool:
        """Delete a session. Returns False if it did not exist."""
        removed = await self.engine.remove(self._key(session_id))
        if removed:
            logger.info("Session destroyed")
        return removed

    async def _save(self, session: Session) -> None:
        await self.engine.write(
            self._key(session.session_id),
            session.to_dict(),
            self.ttl,
            created_at=session.created_at,
        )

    async def _refresh(self, session: Session) -> bool:
        entry = await self.engine.rewrite(
            self._key(session.session_id),
            session.to_dict(),
            self.ttl,
            created_at=session.created_at,
        )
        return entry is not None
