"""
Process-local TTL cache for analytics query results.

Keys are structured ``CacheKey(organization_id, method, fingerprint)`` tuples
and an organization index maps each organization to its live keys, so
invalidating one organization never touches another and never relies on
substring matching.

Entries live in a ``cachetools.TLRUCache``: each result carries its own TTL,
expired entries are swept on every insert and the least recently used entry
is evicted once ``maxsize`` is reached.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, NamedTuple, Optional

import structlog
from cachetools import TLRUCache

from teampulse.utils.timeutils import utc_now

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1024


class CacheKey(NamedTuple):
    organization_id: str
    method: str
    fingerprint: str


class CacheEntry(NamedTuple):
    value: Any
    ttl_seconds: float


def _entry_expiry(key: CacheKey, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl_seconds


class _ResultStore(TLRUCache):
    """TLRUCache that reports every key it drops on its own."""

    def __init__(self, maxsize: int, timer: Callable[[], float], on_drop: Callable[[CacheKey], None]):
        super().__init__(maxsize=maxsize, ttu=_entry_expiry, timer=timer)
        self._on_drop = on_drop

    def expire(self, time=None):
        expired = super().expire(time)
        for key, _ in expired:
            self._on_drop(key)
        return expired

    def popitem(self):
        key, entry = super().popitem()
        self._on_drop(key)
        return key, entry


class AnalyticsCache:
    """
    Thread-safe, size-bounded TTL cache with per-organization invalidation.

    Attributes:
        clock: Returns the current UTC time; injectable for tests
        maxsize: Entries kept before the least recently used one is evicted
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now, maxsize: int = DEFAULT_MAX_ENTRIES):
        self.clock = clock
        self.maxsize = maxsize
        self._by_org: dict[str, set[CacheKey]] = {}
        self._entries = _ResultStore(maxsize, timer=lambda: self.clock().timestamp(), on_drop=self._unindex)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def get(self, key: CacheKey) -> Optional[Any]:
        """Return the cached value, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def set(self, key: CacheKey, value: Any, ttl: timedelta) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, ttl_seconds=ttl.total_seconds())
            # A zero TTL is never stored.
            if key in self._entries:
                self._by_org.setdefault(key.organization_id, set()).add(key)

    def invalidate_organization(self, organization_id: str) -> int:
        """
        Drop every entry of one organization.

        Returns:
            Number of entries removed
        """
        with self._lock:
            self._entries.expire()
            keys = self._by_org.pop(organization_id, set())
            removed = sum(1 for key in keys if self._entries.pop(key, None) is not None)

        if removed:
            logger.debug("analytics_cache_invalidated", organization_id=organization_id, count=removed)
        return removed

    def cleanup(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            return len(self._entries.expire())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_org.clear()

    def _unindex(self, key: CacheKey) -> None:
        # Called by the store while the caller holds the lock.
        org_keys = self._by_org.get(key.organization_id)
        if org_keys is not None:
            org_keys.discard(key)
            if not org_keys:
                del self._by_org[key.organization_id]
