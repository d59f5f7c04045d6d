"""Retry helper with exponential backoff for async operations."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from unistore.logging.setup import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def compute_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential_backoff: bool = True,
) -> float:
    """
    Delay to wait after a failed attempt.

    Args:
        attempt: 1-based number of the attempt that just failed
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any delay, in seconds
        exponential_backoff: Double the delay after each failure when True

    Returns:
        Delay in seconds
    """
    if not exponential_backoff:
        return base_delay
    return min(base_delay * 2 ** (attempt - 1), max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential_backoff: bool = True,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """
    Run an async operation, retrying it when it raises.

    Args:
        operation: Zero-argument callable returning an awaitable
        max_attempts: Total number of attempts, including the first
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound for any delay, in seconds
        exponential_backoff: Double the delay after each failure when True
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately

    Returns:
        The operation's result from the first successful attempt

    Raises:
        ValueError: If max_attempts is less than 1
        Exception: The error raised by the last attempt, unchanged
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == max_attempts:
                logger.error(
                    f"Operation failed after {max_attempts} attempts: {e}")
                raise
            delay = compute_backoff_delay(
                attempt, base_delay, max_delay, exponential_backoff)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed ({e}); "
                f"retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
