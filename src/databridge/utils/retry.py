"""Retry helpers built on tenacity.

Two retry layers exist and they do not compound:

- The job queue re-runs a whole stage with its own backoff (see
  ``databridge.migration.queue``).
- Individual HTTP operations (attachment transfers, document listing) are
  retried here with exponential backoff.
"""

from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from databridge.client.exceptions import NetworkError, RateLimitError, ServerError
from databridge.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

TRANSIENT_ERRORS = (
    httpx.NetworkError,
    httpx.TimeoutException,
    NetworkError,
    ServerError,
    RateLimitError,
)


class wait_power(wait_base):
    """Wait ``base ** attempt_number`` seconds between attempts.

    With the default base of 2 the waits are 2s, 4s, 8s, ...
    """

    def __init__(self, base: float = 2.0, max_wait: float | None = None) -> None:
        self.base = base
        self.max_wait = max_wait

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.base ** retry_state.attempt_number
        if self.max_wait is not None:
            delay = min(delay, self.max_wait)
        return float(delay)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "operation_retrying",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc) if exc else None,
    )


def retry_on_network_error(
    max_attempts: int = 5, min_wait: int = 1, max_wait: int = 30
) -> Callable[[F], F]:
    """Retry decorator for coroutines that fail with transient HTTP errors.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds

    Returns:
        Decorated coroutine function with retry logic
    """

    def decorator(func: F) -> F:
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=_log_before_sleep,
            reraise=True,
        )
        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            return await func(*args, **kwargs)

        return async_wrapper  # type: ignore

    return decorator


def exponential_retrying(
    max_attempts: int,
    backoff_base: float = 2.0,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    on_retry: Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    """Build an AsyncRetrying that waits ``backoff_base ** attempt`` seconds.

    Every exception is retried; the last one is re-raised when attempts are
    exhausted.

    Args:
        max_attempts: Total attempts including the first
        backoff_base: Base of the exponential wait
        sleep: Coroutine used for waiting (injectable for tests)
        on_retry: Callback invoked before each wait

    Returns:
        Configured AsyncRetrying instance
    """
    kwargs: dict[str, Any] = {
        "stop": stop_after_attempt(max_attempts),
        "wait": wait_power(backoff_base),
        "before_sleep": on_retry or _log_before_sleep,
        "reraise": True,
    }
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(**kwargs)
