"""
Time-bounded in-memory cache.

Used for query-rewrite results and web-search responses. Instances are
owned and injected by the orchestrator rather than held as module globals,
so tests get isolated caches.

- Entries expire after ttl_secs; expiry is checked lazily on read.
- Size is bounded; inserting past max_size evicts the oldest entries.
- All operations take a lock, so concurrent in-flight queries can share one
  instance.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    stored_at: float
    expires_at: float


class TTLCache(Generic[V]):
    """Thread-safe keyed cache with per-entry expiry and bounded size."""

    def __init__(
        self,
        ttl_secs: float = 3600.0,
        max_size: int = 1000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.ttl_secs = float(ttl_secs)
        self.max_size = max(1, int(max_size))
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, _Entry[V]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[V]:
        """
        Get a cached value if present and not expired.

        Expired entries are removed on the read that finds them.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: V) -> None:
        now = self._clock()
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = _Entry(value=value, stored_at=now, expires_at=now + self.ttl_secs)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> int:
        """Remove all entries. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_secs": self.ttl_secs,
                "hits": self._hits,
                "misses": self._misses,
            }
