"""Response Cache - TTL and capacity bounded query to response cache.

Queries are normalized (lowercased and trimmed) and optionally scoped by a
context string before hashing. Expired entries are evicted lazily on read
and in bulk by ``prune``. When the cache is full, storing a new key evicts
the single oldest entry.

The cache is shared by concurrent requests, so every operation holds a
lock. It is constructed once per process and injected where needed.

Example:
    >>> cache = ResponseCache(max_entries=500, ttl_seconds=1800)
    >>> cache.get("What is our refund policy?") is None
    True
    >>> cache.set("What is our refund policy?", "30 days, no questions.", tokens_saved=420)
    >>> cache.get("  what is our refund policy?").hit_count
    1
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SECONDS = 60 * 60


def normalize_query(query: str) -> str:
    return query.lower().strip()


def cache_key(query: str, context: Optional[str] = None) -> str:
    """Hash of the normalized query, scoped by ``context`` when given."""
    normalized = normalize_query(query)
    raw = f"{context}:{normalized}" if context else normalized
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# =============================================================================
# Cache Entry
# =============================================================================


@dataclass
class CacheEntry:
    """One cached response.

    Attributes:
        key: Cache key
        response: Cached response text
        tokens_saved: Tokens a hit avoids spending
        created_at: Clock reading when the entry was stored
        hit_count: Number of hits served
    """
    key: str
    response: str
    tokens_saved: int
    created_at: float
    hit_count: int = 0

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at > ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "response": self.response,
            "tokens_saved": self.tokens_saved,
            "created_at": self.created_at,
            "hit_count": self.hit_count,
        }


# =============================================================================
# Response Cache
# =============================================================================


class ResponseCache:
    """Thread-safe response cache with hit and miss accounting."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            max_entries: Capacity; must be positive
            ttl_seconds: Entry time-to-live; must be positive
            clock: Time source in seconds, injectable for tests
        """
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def get(self, query: str, context: Optional[str] = None) -> Optional[CacheEntry]:
        """Look up a response; counts a hit or a miss.

        Returns:
            The entry with its updated hit count, or None on a miss.
        """
        key = cache_key(query, context)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock(), self._ttl):
                del self._entries[key]
                self._misses += 1
                return None
            entry.hit_count += 1
            self._hits += 1
            return entry

    def set(
        self,
        query: str,
        response: str,
        tokens_saved: int = 0,
        context: Optional[str] = None,
    ) -> CacheEntry:
        """Store a response, evicting the oldest entry when full."""
        key = cache_key(query, context)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                logger.debug(f"[Cache] Evicted {evicted_key[:12]} at capacity")
            self._entries.pop(key, None)
            entry = CacheEntry(
                key=key,
                response=response,
                tokens_saved=tokens_saved,
                created_at=self._clock(),
            )
            self._entries[key] = entry
            return entry

    def prune(self) -> int:
        """Remove all expired entries. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now, self._ttl)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def top_entries(self, limit: int = 10) -> list[CacheEntry]:
        """Most-hit entries first."""
        with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda e: e.hit_count, reverse=True)[:limit]

    def stats(self) -> dict[str, Any]:
        """Cache statistics; hit rate is a percentage."""
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "total_entries": len(self._entries),
                "total_hits": self._hits,
                "total_misses": self._misses,
                "hit_rate": (self._hits / lookups * 100) if lookups else 0.0,
                "tokens_saved": sum(e.tokens_saved * e.hit_count for e in self._entries.values()),
            }


__all__ = [
    "ResponseCache",
    "CacheEntry",
    "cache_key",
    "normalize_query",
    "DEFAULT_MAX_ENTRIES",
    "DEFAULT_TTL_SECONDS",
]
