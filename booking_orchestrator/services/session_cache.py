"""Thread-safe TTL cache and the Session Identity Map built on it.

Design decisions
────────────────
• **Injected clock**: every entry stores an absolute expiry computed from
  ``clock()``.  Production passes ``time.monotonic``; tests pass a fake
  clock and advance it, so expiry is deterministic.
• **Lazy expiry**: stale entries are dropped when read and swept whenever
  the cache is written; no background thread.
• **OrderedDict** keeps insertion order so the oldest entry is evicted first
  once ``max_entries`` is reached.
• **threading.Lock** because FastAPI serves turns on a thread pool.

Usage
─────
>>> sessions = SessionIdentityMap(ttl_seconds=600)
>>> sessions.set_user_id("f3a1…", "user-42")
>>> sessions.get_user_id("f3a1…")
'user-42'
>>> sessions.get_user_id("unknown")       # not authenticated: a signal
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from booking_orchestrator.config import SESSION_TTL_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50_000

Clock = Callable[[], float]


class TTLCache:
    """Key/value cache whose entries expire ``ttl_seconds`` after being set."""

    def __init__(
        self,
        ttl_seconds: float = SESSION_TTL_SECONDS,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        # key → (value, expires_at)
        self._store: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Return the value for *key*, or ``None`` if missing or expired."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._store[key]
                logger.debug("TTL cache: %s expired", key)
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Insert or overwrite *key*; the TTL restarts from now."""
        now = self._clock()
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._sweep(now)
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries:
                evicted, _ = self._store.popitem(last=False)
                logger.debug("TTL cache: evicted %s (capacity)", evicted)
            self._store[key] = (value, now + ttl)

    def delete(self, key: str) -> bool:
        """Remove *key*.  Returns ``True`` if it was present."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            return len(self._store)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._store.items() if exp <= now]
        for key in expired:
            del self._store[key]


# ── Session Identity Map ─────────────────────────────────────────────

_SLOTS_PREFIX = "slots_"


class SessionIdentityMap:
    """Maps an opaque chat ``session_id`` to an authenticated ``user_id``.

    The same TTL cache also holds the most recent slot list offered to a
    session, so a follow-up like "L01" can be resolved without asking the
    model to echo identifiers back.
    """

    def __init__(
        self,
        ttl_seconds: float = SESSION_TTL_SECONDS,
        *,
        clock: Clock = time.monotonic,
        cache: TTLCache | None = None,
    ) -> None:
        self._cache = cache or TTLCache(ttl_seconds, clock=clock)

    def set_user_id(self, session_id: str, user_id: str) -> None:
        self._cache.set(session_id, user_id)
        logger.info("Session %s bound to user %s", session_id[:8], user_id)

    def get_user_id(self, session_id: str | None) -> str | None:
        if not session_id:
            return None
        return self._cache.get(session_id)

    def set_available_slots(self, session_id: str, slots: list[Any]) -> None:
        self._cache.set(f"{_SLOTS_PREFIX}{session_id}", list(slots))
        logger.debug("Cached %d slots for session %s", len(slots), session_id[:8])

    def get_available_slots(self, session_id: str) -> list[Any] | None:
        return self._cache.get(f"{_SLOTS_PREFIX}{session_id}")

    def clear_available_slots(self, session_id: str) -> None:
        self._cache.delete(f"{_SLOTS_PREFIX}{session_id}")

    def forget(self, session_id: str) -> None:
        """Drop both the identity binding and any cached slots."""
        self._cache.delete(session_id)
        self.clear_available_slots(session_id)
