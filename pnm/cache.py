"""TTL caches and layered lookups for enrichment data."""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Lookup = Callable[[str], T | None]


@dataclass
class CacheEntry(Generic[T]):
    """One cached payload and when it was fetched."""

    key: str
    payload: T
    fetched_at: float


class TTLCache(Generic[T]):
    """Thread-safe per-key cache whose entries expire after *ttl* seconds.

    Expired entries are never returned; they are dropped lazily on access or
    by :meth:`purge_expired`.  Nothing else invalidates an entry except
    :meth:`clear`.

    Args:
        ttl: Entry lifetime in seconds.
        clock: Wall-clock source (seconds since epoch), injectable for tests.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> T | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._clock() - entry.fetched_at >= self.ttl:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.payload

    def put(self, key: str, payload: T, fetched_at: float | None = None) -> None:
        stamp = self._clock() if fetched_at is None else fetched_at
        with self._lock:
            self._entries[key] = CacheEntry(key=key, payload=payload, fetched_at=stamp)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                k for k, e in self._entries.items() if now - e.fetched_at >= self.ttl
            ]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> dict[str, int | float]:
        return {
            "size": len(self._entries),
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }


class LayeredLookup(Generic[T]):
    """Ordered chain of lookup strategies backed by a memory cache.

    ``get(key)`` consults the cache, then each strategy in order until one
    returns a payload.  A hit from a strategy is written back into the cache
    so the next call within the TTL stays in memory.

    Args:
        cache: Memory cache consulted first.
        layers: ``(name, lookup)`` pairs tried in order.
    """

    def __init__(
        self,
        cache: TTLCache[T],
        layers: Iterable[tuple[str, Lookup[T]]],
    ) -> None:
        self.cache = cache
        self.layers = list(layers)

    def get(self, key: str) -> T | None:
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        for name, lookup in self.layers:
            payload = lookup(key)
            if payload is not None:
                logger.debug("%s: hit in %s layer", key, name)
                # TTL counts from the payload's own fetch time.
                self.cache.put(key, payload, getattr(payload, "fetched_at", None) or None)
                return payload
        return None
