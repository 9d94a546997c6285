"""
Circuit breaker guarding the exchange, CoinMarketCap, Aptos and Gemini calls.

After a run of consecutive failures the breaker opens and rejects calls
outright until a cooldown passes, then lets trial calls through.
"""

import time
import threading
import logging
from enum import Enum
from typing import Any, Callable

from .errors import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Three-state breaker (CLOSED -> OPEN -> HALF_OPEN -> CLOSED).

    Example:
        breaker = CircuitBreaker(name="APTOS_NODE", failure_threshold=5, timeout=60)

        try:
            result = breaker.call_function(lambda: session.post(url, json=payload))
        except CircuitBreakerOpenError:
            result = None
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 2,
    ):
        """
        Args:
            name: Label used in logs and stats
            failure_threshold: Consecutive failures that open the circuit
            timeout: Seconds in OPEN before a trial call is allowed
            success_threshold: Trial successes needed to close again
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_available(self) -> bool:
        """True unless the circuit is OPEN and still cooling down."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return True
            return time.time() - self._opened_at >= self.timeout

    def call_function(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run func through the breaker.

        Raises:
            CircuitBreakerOpenError: circuit is OPEN and cooling down
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.time() - self._opened_at < self.timeout:
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker '{self.name}' is OPEN",
                        context={'failures': self._failures, 'timeout': self.timeout},
                    )
                logger.info(f"[CircuitBreaker:{self.name}] Trial call (HALF_OPEN)")
                self._state = CircuitState.HALF_OPEN
                self._trial_successes = 0

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.success_threshold:
                    logger.info(f"[CircuitBreaker:{self.name}] Service recovered, closing")
                    self._state = CircuitState.CLOSED
                    self._failures = 0
            else:
                self._failures = 0

    def _record_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"[CircuitBreaker:{self.name}] Trial call failed, reopening")
                self._open()
            elif self._failures >= self.failure_threshold:
                logger.error(
                    f"[CircuitBreaker:{self.name}] Opening circuit "
                    f"({self._failures}/{self.failure_threshold} failures)"
                )
                self._open()

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = time.time()
        self._trial_successes = 0

    def get_stats(self) -> dict:
        with self._lock:
            return {
                'name': self.name,
                'state': self._state.value,
                'failure_count': self._failures,
                'threshold': self.failure_threshold,
                'timeout': self.timeout,
            }
