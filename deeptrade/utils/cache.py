"""
In-memory TTL cache shared by the market data and leaderboard services.

Thread-safe: the price feed threads, the engine scheduler and Flask request
threads all read and write it concurrently.
"""

import time
import threading
from collections import OrderedDict
from typing import Any, Callable, Optional


class SimpleCache:
    """
    TTL cache with LRU eviction and hit/miss counters.

    Example:
        cache = SimpleCache(default_ttl=30.0, max_size=100)
        cache.set('leaderboard:all_time', payload)
        cache.get('leaderboard:all_time')   # payload, or None after 30s
        cache.get_or_set('ohlcv:APT/USDC:5m', lambda: fetch(), ttl=60)
    """

    def __init__(self, default_ttl: float = 60.0, max_size: int = 1000):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._entries = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            value, expires_at = entry
            if time.time() > expires_at:
                del self._entries[key]
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None):
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (value, time.time() + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """
        Return the cached value, computing and storing it on a miss.

        The factory runs outside the lock. A None result is returned but
        not cached.
        """
        value = self.get(key)
        if value is not None:
            return value
        value = factory()
        if value is not None:
            self.set(key, value, ttl=ttl)
        return value

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> dict:
        with self._lock:
            total = self._hits + self._misses
            return {
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': round(self._hits / total, 3) if total else 0.0,
                'size': len(self._entries),
                'max_size': self.max_size,
            }
