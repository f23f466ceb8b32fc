"""
Infrastructure-specific decorators, providing cross-cutting concerns like
retry logic for network operations.
"""

import logging

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

logger = logging.getLogger(__name__)

# --- Defaults for Retry Logic (overridable via [extensions] settings) ---
_RETRY_ATTEMPTS = 3
_RETRY_MIN_WAIT_SECONDS = 1
_RETRY_MAX_WAIT_SECONDS = 10

_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.TimeoutException,
    httpx.HTTPStatusError,
)


def _log_before_retry(retry_state):
    """Log the retry attempt with details about the exception and wait time."""
    exception = retry_state.outcome.exception()
    next_attempt_in = retry_state.next_action.sleep
    logger.warning(
        f"Retrying {retry_state.fn.__name__} in {next_attempt_in:.2f}s due to "
        f"{type(exception).__name__} (attempt {retry_state.attempt_number})..."
    )


def network_retry(
    attempts: int = _RETRY_ATTEMPTS,
    min_wait: float = _RETRY_MIN_WAIT_SECONDS,
    max_wait: float = _RETRY_MAX_WAIT_SECONDS,
):
    """
    Builds a retry decorator for flaky network operations.

    The last exception is re-raised once attempts are exhausted, so callers
    see the original httpx error rather than a tenacity RetryError.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(_NETWORK_ERRORS),
        before_sleep=_log_before_retry,
        reraise=True,
    )

