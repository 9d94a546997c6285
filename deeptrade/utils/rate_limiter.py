"""
Sliding-window rate limiter for outbound API calls.

CoinMarketCap's basic plan allows roughly 30 calls per minute and Binance
REST allows 1200 weight per minute; each service gets its own limiter.
"""

import time
from collections import deque
from threading import Lock
from typing import Optional


class RateLimiter:
    """
    Allow at most max_calls within any rolling window of period seconds.

    Example:
        limiter = RateLimiter(max_calls=30, period=60)
        if limiter.wait_if_needed(timeout=5):
            requests.get(cmc_url, headers=headers)
    """

    def __init__(self, max_calls: int, period: float):
        self.max_calls = max_calls
        self.period = period
        self._calls = deque()
        self._lock = Lock()
        self._allowed = 0
        self._blocked = 0

    def _evict(self, now: float):
        while self._calls and now - self._calls[0] >= self.period:
            self._calls.popleft()

    def allow(self) -> bool:
        """Record and permit a call if the window has room."""
        with self._lock:
            now = time.time()
            self._evict(now)
            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                self._allowed += 1
                return True
            self._blocked += 1
            return False

    def wait_if_needed(self, timeout: float = 10.0) -> bool:
        """Block until a call is allowed; False if timeout expires first."""
        deadline = time.time() + timeout
        while not self.allow():
            if time.time() > deadline:
                return False
            time.sleep(0.1)
        return True

    def get_wait_time(self) -> Optional[float]:
        """Seconds until the next call is allowed, None if allowed now."""
        with self._lock:
            now = time.time()
            self._evict(now)
            if len(self._calls) < self.max_calls:
                return None
            return max(0.0, self._calls[0] + self.period - now)

    def get_stats(self) -> dict:
        with self._lock:
            in_window = len(self._calls)
            return {
                'hits': self._allowed,
                'blocks': self._blocked,
                'current_calls_in_window': in_window,
                'limit': self.max_calls,
                'period': self.period,
                'utilization': in_window / self.max_calls if self.max_calls > 0 else 0,
            }
