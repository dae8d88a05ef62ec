"""
In-memory registry of traversal sessions with idle TTL and LRU eviction.

Features:
- Idle-timeout expiry with lazy cleanup on access
- Thread-safe operations with RLock
- LRU eviction when max size reached
- Hit/miss statistics
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from compliance_engine.observability.metrics import traversal_sessions

logger = logging.getLogger(__name__)

S = TypeVar("S")


@dataclass
class RegistryStats:
    hits: int = 0
    misses: int = 0
    size: int = 0
    evictions: int = 0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "evictions": self.evictions,
        }


class SessionRegistry(Generic[S]):
    """Holds per-client view state; sessions expire after *idle_ttl* seconds without access."""

    def __init__(
        self,
        factory: Callable[[str], S],
        max_size: int = 500,
        idle_ttl: float = 3600,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the registry.

        Args:
            factory: Builds a new session for a session id
            max_size: Maximum sessions before LRU eviction
            idle_ttl: Seconds of inactivity before a session expires
        """
        self._factory = factory
        self._sessions: dict[str, tuple[S, float]] = {}  # id -> (session, last_access)
        self._lock = threading.RLock()
        self._max_size = max_size
        self._idle_ttl = idle_ttl
        self._monotonic = monotonic
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, session_id: str | None) -> S | None:
        """Return a live session, or None if unknown or expired."""
        if not session_id:
            return None
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                self._misses += 1
                return None
            session, last_access = entry
            now = self._monotonic()
            if now - last_access > self._idle_ttl:
                del self._sessions[session_id]
                self._misses += 1
                self._update_gauge()
                logger.debug(f"Session {session_id} expired")
                return None
            self._sessions[session_id] = (session, now)
            self._hits += 1
            return session

    def get_or_create(self, session_id: str | None = None) -> tuple[str, S]:
        """
        Return (session_id, session), creating a fresh session when needed.

        Ids are always issued here; an unknown or expired *session_id* gets a
        new session under a new id.
        """
        session = self.get(session_id)
        if session is not None:
            return session_id, session

        new_id = f"tree-{uuid.uuid4().hex[:16]}"
        session = self._factory(new_id)
        with self._lock:
            self.cleanup_expired()
            self._sessions[new_id] = (session, self._monotonic())
            while len(self._sessions) > self._max_size:
                self._evict_lru()
            self._update_gauge()
        logger.info(f"Traversal session {new_id} created")
        return new_id, session

    def drop(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            self._update_gauge()
            return removed

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self._monotonic()
            expired = [
                sid for sid, (_, last_access) in self._sessions.items()
                if now - last_access > self._idle_ttl
            ]
            for sid in expired:
                del self._sessions[sid]
            self._update_gauge()
            return len(expired)

    def stats(self) -> RegistryStats:
        with self._lock:
            return RegistryStats(
                hits=self._hits,
                misses=self._misses,
                size=len(self._sessions),
                evictions=self._evictions,
            )

    def _evict_lru(self) -> None:
        """Evict the least-recently-used session. Must be called with the lock held."""
        if not self._sessions:
            return
        lru_id = min(self._sessions, key=lambda sid: self._sessions[sid][1])
        del self._sessions[lru_id]
        self._evictions += 1
        logger.debug(f"Evicted LRU session: {lru_id}")

    def _update_gauge(self) -> None:
        traversal_sessions.set(len(self._sessions))
