"""Bounded-concurrency execution of async operations over a batch."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_MAX_CONCURRENT = 10


async def run_limited(
    items: Iterable[T],
    operation: Callable[[T], Awaitable[R]],
    *,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> list[R]:
    """
    Apply an async operation to every item with a cap on work in flight.

    A fixed pool of workers pulls item positions from a shared iterator and
    writes each result into a pre-sized list at that position, so the output
    order always matches the input order.

    Args:
        items: Inputs to process
        operation: Coroutine function called once per item
        max_concurrent: Maximum number of operations running at once

    Returns:
        Results in input order

    Raises:
        ValueError: If max_concurrent is less than 1
        Exception: The first error raised by the operation; remaining
            workers are cancelled
    """
    if max_concurrent < 1:
        raise ValueError("max_concurrent must be at least 1")

    pending = list(items)
    if not pending:
        return []

    results: list[R] = [None] * len(pending)  # type: ignore[list-item]
    positions = iter(range(len(pending)))

    async def worker() -> None:
        for index in positions:
            results[index] = await operation(pending[index])

    workers = [asyncio.create_task(worker())
               for _ in range(min(max_concurrent, len(pending)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise

    return results
