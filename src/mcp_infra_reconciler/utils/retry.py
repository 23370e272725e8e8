"""Retry of transient provider failures with exponential backoff."""
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..providers.base import ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception()
    name = getattr(retry_state.fn, "__name__", "call")
    status = f" (status {error.status})" if isinstance(error, ProviderError) and error.status else ""
    logger.warning(
        f"Attempt {retry_state.attempt_number} of {name} failed{status}: {error}; "
        f"retrying in {retry_state.next_action.sleep:.2f}s"
    )


def with_retry(
    max_attempts: int = 4,
    min_wait: float = 1,
    max_wait: float = 30,
    exceptions: tuple = (TransientProviderError,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator factory retrying a coroutine on transient provider errors.

    Anything outside ``exceptions`` (permanent provider errors, timeouts,
    cancellation) propagates on the first attempt. Once attempts run out
    the last error is re-raised unchanged.

    Args:
        max_attempts: Maximum number of attempts (first call included)
        min_wait: First backoff delay, doubled per retry (seconds)
        max_wait: Cap on a single backoff delay (seconds)
        exceptions: Exception types worth another attempt
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(exceptions),
                before_sleep=_log_retry,
                reraise=True,
            )
            return await retrying(func, *args, **kwargs)

        return wrapper

    return decorator
