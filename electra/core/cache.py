"""
Read Cache

Process-local TTL cache over decoded ledger reads.

Keys are namespaced by prefix so that writes and events can drop whole
families of entries with one substring match:

    election:info, election:statistics, election:winner
    candidate:all
    voter:<address>
    role:<address>
    nonce:<address>

Guarantees:
- An entry older than its ttl is a miss, even if still stored
- Expired entries are only ever served through get_stale(), and only
  when they were written with stale_while_revalidate=True
- invalidate() is idempotent
- Concurrent set() on one key is last-write-wins
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Optional

from ..observability import MetricsCollector, get_logger

logger = get_logger(__name__)

# Namespaces
ELECTION = "election"
CANDIDATE = "candidate"
VOTER = "voter"
ROLE = "role"
NONCE = "nonce"


def cache_key(namespace: str, name: str) -> str:
    return f"{namespace}:{name}"


@dataclass
class CacheEntry:
    key: str
    value: Any
    written_at: float
    ttl: float
    stale_while_revalidate: bool = False

    def is_expired(self, now: float) -> bool:
        return now - self.written_at > self.ttl


class ReadCache:
    """
    In-memory TTL cache with namespace-pattern invalidation.

    None is not a cacheable value; get() returns None to mean "miss".
    """

    def __init__(
        self,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._ttl = ttl
        self._clock = clock
        self._metrics = metrics
        self._entries: dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def _record(self, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1
        if self._metrics is not None:
            self._metrics.record_cache(hit)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._record(False)
                return None

            if entry.is_expired(self._clock()):
                # Keep stale-while-revalidate entries around for get_stale()
                if not entry.stale_while_revalidate:
                    del self._entries[key]
                self._record(False)
                return None

            self._record(True)
            return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Fresh entry metadata without touching hit/miss counters."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry

    def get_stale(self, key: str) -> Optional[Any]:
        """
        Return a value even if expired, but only when the entry was
        written with stale_while_revalidate=True. Fresh entries are
        returned as-is.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()) and not entry.stale_while_revalidate:
                return None
            return entry.value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        stale_while_revalidate: bool = False,
    ) -> None:
        if value is None:
            raise ValueError("Cannot cache None")
        entry = CacheEntry(
            key=key,
            value=value,
            written_at=self._clock(),
            ttl=self._ttl if ttl is None else ttl,
            stale_while_revalidate=stale_while_revalidate,
        )
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate(self, pattern: str) -> int:
        """
        Drop every entry whose key contains `pattern`.

        Returns the number of entries removed (0 on a repeated call).
        """
        with self._lock:
            doomed = [k for k in self._entries if pattern in k]
            for key in doomed:
                del self._entries[key]

        if doomed:
            logger.debug("Cache invalidated", pattern=pattern, removed=len(doomed))
        return len(doomed)

    def invalidate_many(self, patterns) -> int:
        return sum(self.invalidate(p) for p in patterns)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "ttl": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else None,
        }
