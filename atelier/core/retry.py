"""
Bounded Retry Wrapper

Wraps a single fallible async call with a bounded number of attempts.
Callers only ever observe the final success or the last failure,
which propagates unchanged.

Usage:
    @with_retry(operation="extract_whole_frame")
    async def segment(image):
        ...

    result = await call_with_retry(lambda: client.detect_person(image),
                                   operation="detect_person")
"""

import asyncio
import functools
from typing import Awaitable, Callable, Optional, TypeVar

from atelier.core.config import settings
from atelier.core.exceptions import CircuitBreakerOpenError, ValidationError
from atelier.core.logging import get_logger
from atelier.core.metrics import record_retry

logger = get_logger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Whether another attempt could plausibly succeed."""
    return not isinstance(error, (ValidationError, CircuitBreakerOpenError))


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay before retry number `attempt` (1-based); 0 when base is 0."""
    if base <= 0:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    operation: str = "remote_call",
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    max_backoff_seconds: Optional[float] = None,
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """
    Await `fn()` up to `max_attempts` times.

    Defaults come from settings at call time (RETRY_MAX_ATTEMPTS,
    RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_MAX_SECONDS). Cancellation is
    never retried.
    """
    attempts = max(1, max_attempts if max_attempts is not None else settings.RETRY_MAX_ATTEMPTS)
    base = settings.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    cap = settings.RETRY_BACKOFF_MAX_SECONDS if max_backoff_seconds is None else max_backoff_seconds

    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise

            delay = backoff_delay(attempt, base, cap)
            logger.warning(
                "retrying_operation",
                operation=operation,
                attempt=attempt,
                max_attempts=attempts,
                delay_seconds=delay,
                error=str(exc),
                error_type=type(exc).__name__
            )
            record_retry(operation)
            if delay:
                await asyncio.sleep(delay)


def with_retry(
    operation: Optional[str] = None,
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    max_backoff_seconds: Optional[float] = None,
    should_retry: Callable[[BaseException], bool] = is_transient,
):
    """Decorator form of call_with_retry for async functions."""
    def decorator(func):
        name = operation or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await call_with_retry(
                lambda: func(*args, **kwargs),
                operation=name,
                max_attempts=max_attempts,
                backoff_seconds=backoff_seconds,
                max_backoff_seconds=max_backoff_seconds,
                should_retry=should_retry,
            )

        return wrapper

    return decorator
