"""
Response Cache - short-TTL in-process memoization of read payloads.

Provides:
- ResponseCache: per-owner cache with per-namespace TTLs
- CacheNamespace: endpoint classes with their default TTLs

Entries are keyed by (namespace, owner_key, variant), where owner_key is
a site hash or identity id. An entry may also name related owners (the
identity a site payload was computed for); evicting any of them drops
it. Reads past TTL drop the entry lazily; there is no background sweep.

CRITICAL: Every mutation (spend, add, subscription sync) MUST call
evict() for the affected owners. In a multi-instance deployment each
process holds its own cache, so cross-instance staleness is bounded by
one TTL.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


class CacheNamespace:
    """Cached endpoint classes."""
    USAGE = "usage"
    SUBSCRIPTION = "subscription"
    DASHBOARD = "dashboard"


DEFAULT_TTLS: Dict[str, float] = {
    CacheNamespace.USAGE: 1.0,
    CacheNamespace.SUBSCRIPTION: 30.0,
    CacheNamespace.DASHBOARD: 30.0,
}


@dataclass
class CacheEntry:
    """Cached payload with the clock reading it was stored at."""
    payload: Any
    stored_at: float
    related: FrozenSet[str] = frozenset()


CacheKey = Tuple[str, str, str]


class ResponseCache:
    """
    Thread-safe TTL cache.

    Constructed once per process and passed to request handlers.
    The clock is injectable so tests can move time explicitly.

    Usage:
        cache = ResponseCache()
        payload = cache.get(CacheNamespace.USAGE, site_hash)
        if payload is None:
            payload = compute()
            cache.set(CacheNamespace.USAGE, site_hash, payload)
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        ttls: Optional[Dict[str, float]] = None,
    ):
        self._clock = clock or time.monotonic
        self._ttls = dict(DEFAULT_TTLS)
        if ttls:
            self._ttls.update(ttls)
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = Lock()

    def ttl(self, namespace: str) -> float:
        return self._ttls.get(namespace, DEFAULT_TTLS[CacheNamespace.USAGE])

    @staticmethod
    def _key(namespace: str, owner_key: str, variant: str) -> CacheKey:
        return (namespace, owner_key, variant or "")

    def get(self, namespace: str, owner_key: str, variant: str = "") -> Optional[Any]:
        """Return the cached payload if it is younger than the namespace TTL."""
        key = self._key(namespace, owner_key, variant)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at < self.ttl(namespace):
                return entry.payload
            # Expired: drop lazily
            del self._entries[key]
            return None

    def set(
        self,
        namespace: str,
        owner_key: str,
        payload: Any,
        variant: str = "",
        related: Optional[Iterable[str]] = None,
    ) -> None:
        key = self._key(namespace, owner_key, variant)
        entry = CacheEntry(
            payload=payload,
            stored_at=self._clock(),
            related=frozenset(owner for owner in (related or ()) if owner),
        )
        with self._lock:
            self._entries[key] = entry

    def evict(self, owner_key: str, reason: str = "mutation") -> int:
        """
        Remove every entry (all namespaces and variants) owned by or related
        to an owner.

        Returns:
            Number of entries removed
        """
        if not owner_key:
            return 0
        with self._lock:
            keys = [
                key for key, entry in self._entries.items()
                if key[1] == owner_key or owner_key in entry.related
            ]
            for key in keys:
                del self._entries[key]

        if keys:
            logger.debug(
                "Cache evicted",
                extra={"owner_key": owner_key, "entries": len(keys), "reason": reason},
            )
        return len(keys)

    def evict_many(self, owner_keys, reason: str = "mutation") -> int:
        return sum(self.evict(owner_key, reason) for owner_key in owner_keys if owner_key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
