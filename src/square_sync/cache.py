"""
Bounded TTL cache.

Used to remember the anti-CSRF tokens handed out with OAuth authorization
URLs. Entries expire after a fixed TTL and the oldest entries are evicted
once the cache is full, so abandoned handshakes cannot grow memory.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """Cache entry with value and expiration time."""
    value: V
    expires_at: float


class BoundedTTLCache(Generic[K, V]):
    """
    Thread-safe insertion-ordered cache with size limit and TTL.

    Example:
        states = BoundedTTLCache[str, str](max_size=10_000, ttl_seconds=600)
        states.set(token, tenant_id)
        tenant_id = states.pop(token)  # One-shot read
    """

    def __init__(
        self,
        max_size: int = 10_000,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()
        self._evictions = 0
        self._expired = 0

    def _live_entry(self, key: K) -> CacheEntry[V] | None:
        """Return the entry if present and unexpired. Must hold lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self._expired += 1
            return None
        return entry

    def set(self, key: K, value: V) -> None:
        """Insert or replace a value, evicting the oldest entries when full."""
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    def pop(self, key: K) -> V | None:
        """Remove and return a live value; None if missing or expired."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry.value

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired_keys = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired_keys:
                del self._entries[key]
            self._expired += len(expired_keys)
        return len(expired_keys)

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "evictions": self._evictions,
            "expired": self._expired,
        }
