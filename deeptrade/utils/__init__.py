"""
Shared infrastructure: error types, retry, caching, circuit breakers,
rate limiting and formatting.
"""

from .errors import (
    TradingBotError,
    DatabaseError,
    ExternalAPIError,
    CircuitBreakerOpenError,
    ConfigurationError,
    ValidationError,
    BotNotFoundError,
)
from .retry import retry_with_backoff, retry_db_operation, safe_execute
from .cache import SimpleCache
from .circuit_breaker import CircuitBreaker, CircuitState
from .rate_limiter import RateLimiter

__all__ = [
    # Exceptions
    'TradingBotError',
    'DatabaseError',
    'ExternalAPIError',
    'CircuitBreakerOpenError',
    'ConfigurationError',
    'ValidationError',
    'BotNotFoundError',
    # Utilities
    'retry_with_backoff',
    'retry_db_operation',
    'safe_execute',
    'SimpleCache',
    'CircuitBreaker',
    'CircuitState',
    'RateLimiter',
]
