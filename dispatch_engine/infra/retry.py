# dispatch_engine/infra/retry.py
"""
Bounded exponential-backoff retries for calls to external collaborators
(candidate directory, notification gateway, event relay, policy source).

Same shape as the database retry helper: fixed attempt cap, delay doubling
after every failure, capped at ``max_delay``.
"""
from __future__ import annotations

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All attempts failed; ``last_error`` holds the final exception."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: "
            f"{last_error.__class__.__name__}: {last_error}"
        )


def is_retryable_error(exc: Exception) -> bool:
    """Retry unless the error says otherwise via a ``retryable`` attribute."""
    return getattr(exc, "retryable", True)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
    retry_on: Callable[[Exception], bool] = is_retryable_error,
    operation: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``func(*args, **kwargs)`` retrying on failure.

    Args:
        max_retries: Retries after the first call (total calls = max_retries + 1)
        initial_delay: Delay before the first retry (seconds)
        backoff_factor: Multiplier for delay after each retry
        max_delay: Maximum delay between retries (seconds)
        retry_on: Predicate; errors it rejects are re-raised immediately
        sleep: Injected for tests

    Raises:
        RetryExhaustedError: when every attempt failed with a retryable error
    """
    name = operation or getattr(func, "__name__", "call")
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not retry_on(exc):
                raise

            if attempt >= max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded in {name}: {exc}")
                raise RetryExhaustedError(name, attempt + 1, exc) from exc

            logger.warning(
                f"Error in {name} (attempt {attempt + 1}/{max_retries + 1}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await sleep(delay)
            delay = min(delay * backoff_factor, max_delay)

    raise AssertionError("unreachable")


def with_retry(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
    retry_on: Callable[[Exception], bool] = is_retryable_error,
):
    """
    Decorator form of :func:`retry_async`.

    Example:
        @with_retry(max_retries=3)
        async def fetch_candidates(category: str):
            ...
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(
                func, *args,
                max_retries=max_retries,
                initial_delay=initial_delay,
                backoff_factor=backoff_factor,
                max_delay=max_delay,
                retry_on=retry_on,
                operation=func.__name__,
                **kwargs,
            )
        return wrapper
    return decorator
