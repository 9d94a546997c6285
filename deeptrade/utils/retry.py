"""
Retry helpers built on tenacity.

Aptos view calls get exponential backoff; Supabase config reads get a short,
fast window. Every retry is logged as a structured line naming the service.
"""

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .errors import DatabaseError, ExternalAPIError
from .logger import get_logger

logger = get_logger(__name__, role="Retry")


def log_retry(service: str):
    """tenacity before_sleep hook: one WARNING line per scheduled retry."""
    def before_sleep(retry_state):
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"{service} call failed, retrying",
            service=service,
            attempt=retry_state.attempt_number,
            wait_secs=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            error=str(error),
        )
    return before_sleep


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
    exceptions: tuple = (ExternalAPIError,),
    service: str = "external",
):
    """
    Decorator retrying a call with exponential backoff.

    Example:
        @retry_with_backoff(max_attempts=3, min_wait=0.5, max_wait=4.0, service="aptos_view")
        def _post_view(self, body):
            return self.session.post(f"{self.node_url}/view", json=body)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=log_retry(service),
        reraise=True,
    )


def retry_db_operation(max_attempts: int = 2):
    """Retry decorator for Supabase calls (short window, DB calls should be fast)."""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2.0),
        retry=retry_if_exception_type((DatabaseError, ConnectionError, TimeoutError)),
        before_sleep=log_retry("supabase"),
        reraise=True,
    )


def safe_execute(func, fallback=None, error_context: dict = None):
    """Run func() and return fallback on any error (logged with error_context)."""
    try:
        return func()
    except Exception as e:
        logger.warning("safe_execute failed, using fallback", error=str(e), **(error_context or {}))
        return fallback
