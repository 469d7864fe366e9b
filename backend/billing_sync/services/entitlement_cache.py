"""
In-process entitlement cache.

WHAT: Maps user id -> (entitlement snapshot, computed_at) with a TTL.

WHY: Permission checks run on almost every page render and each one would
otherwise hit the store and possibly the provider. The cache is an
optimization, never a source of truth: every state-changing operation calls
invalidate(user_id) so a cached entry can never outlive the change it
describes. Expiry bounds staleness for changes this process did not observe.

HOW:
- One instance is created at application startup and stored on app.state;
  services receive it through their constructor.
- Each user id gets its own asyncio.Lock so concurrent checks for the same
  user compute once, while different users never wait on each other.
- invalidate() also records that the user's provider status should be
  re-probed on the next resolve, and bumps the user's generation. A resolve
  that started before the invalidation passes its starting generation to
  set(), which then refuses to store the now outdated snapshot.
- purge() runs from the scheduler and drops expired entries, old last-known
  values and idle locks, so memory follows active users only.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    computed_at: float


class EntitlementCache:
    """
    TTL cache of entitlement snapshots keyed by user id.

    Example:
        cache = EntitlementCache(ttl_seconds=300)
        async with cache.lock_for(user_id):
            entry = cache.get(user_id)
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
        last_known_ttl_seconds: Optional[float] = None,
    ):
        self.ttl_seconds = ttl_seconds
        # Last-known values back the deadline fallback; keep them a while longer
        self.last_known_ttl_seconds = (
            last_known_ttl_seconds if last_known_ttl_seconds is not None else ttl_seconds * 12
        )
        self._clock = clock
        self._entries: Dict[int, CacheEntry] = {}
        self._last_known: Dict[int, CacheEntry] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._generations: Dict[int, int] = {}
        self._force_probe: Set[int] = set()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._started = True
        logger.info(f"Entitlement cache started (ttl={self.ttl_seconds}s)")

    async def stop(self) -> None:
        self.clear()
        self._started = False
        logger.info("Entitlement cache stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def get(self, user_id: int) -> Optional[CacheEntry]:
        """Return a fresh entry, or None when missing or expired."""
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if self._clock() - entry.computed_at > self.ttl_seconds:
            del self._entries[user_id]
            return None
        return entry

    def get_last_known(self, user_id: int) -> Optional[CacheEntry]:
        """
        Return the last value computed for a user, even if expired.

        WHY: Used only as a possibly-stale answer when resolution misses
        its deadline. Invalidation clears it, so it never predates a
        state change this process made.
        """
        return self._last_known.get(user_id)

    def generation(self, user_id: int) -> int:
        """Number of invalidations seen for a user (0 when never invalidated)."""
        return self._generations.get(user_id, 0)

    def set(self, user_id: int, value: Any, generation: Optional[int] = None) -> Optional[CacheEntry]:
        """
        Store a snapshot.

        Args:
            generation: generation() read before the snapshot was computed.
                When the user was invalidated since, nothing is stored.

        Returns:
            The stored entry, or None when the snapshot was outdated
        """
        if generation is not None and generation != self.generation(user_id):
            logger.debug(
                "Discarding snapshot computed before an invalidation",
                extra={"user_id": user_id},
            )
            return None
        entry = CacheEntry(value=value, computed_at=self._clock())
        self._entries[user_id] = entry
        self._last_known[user_id] = entry
        return entry

    def invalidate(self, user_id: int) -> None:
        self._entries.pop(user_id, None)
        self._last_known.pop(user_id, None)
        self._generations[user_id] = self.generation(user_id) + 1
        self._force_probe.add(user_id)
        logger.debug("Entitlement cache invalidated", extra={"user_id": user_id})

    def consume_invalidation(self, user_id: int) -> bool:
        """Return True once after invalidate() was called for this user."""
        if user_id in self._force_probe:
            self._force_probe.discard(user_id)
            return True
        return False

    def purge(self) -> int:
        """
        Evict expired entries, old last-known values and idle locks.

        A user's lock and generation are dropped only when the lock is not
        held and nothing else is stored for them; an in-flight resolve
        always holds its user's lock.

        Returns:
            Number of users whose bookkeeping was dropped entirely
        """
        now = self._clock()
        for user_id, entry in list(self._entries.items()):
            if now - entry.computed_at > self.ttl_seconds:
                del self._entries[user_id]
        for user_id, entry in list(self._last_known.items()):
            if now - entry.computed_at > self.last_known_ttl_seconds:
                del self._last_known[user_id]

        dropped = 0
        for user_id in set(self._locks) | set(self._generations):
            lock = self._locks.get(user_id)
            if lock is not None and lock.locked():
                continue
            if user_id in self._entries or user_id in self._last_known:
                continue
            if user_id in self._force_probe:
                continue
            self._locks.pop(user_id, None)
            self._generations.pop(user_id, None)
            dropped += 1

        if dropped:
            logger.debug(f"Entitlement cache purged {dropped} idle users")
        return dropped

    def clear(self) -> None:
        self._entries.clear()
        self._last_known.clear()
        self._force_probe.clear()
        self._locks.clear()
        self._generations.clear()

    def __len__(self) -> int:
        return len(self._entries)
