"""Bounded fan-out / fan-in over asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int,
) -> list[R]:
    """Run *worker* over *items* with at most *limit* running at once.

    Results are collected through a single queue in completion order, so
    callers that care about order must sort them.  The call returns only
    after every worker has delivered: leaving the task group is the
    barrier.  If any worker raises, the remaining workers are cancelled and
    the errors propagate as an :class:`ExceptionGroup`.
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    pending = list(items)
    if not pending:
        return []

    results: asyncio.Queue[R] = asyncio.Queue()
    semaphore = asyncio.Semaphore(limit)

    async def _run(item: T) -> None:
        async with semaphore:
            results.put_nowait(await worker(item))

    async with asyncio.TaskGroup() as tg:
        for item in pending:
            tg.create_task(_run(item))

    return [results.get_nowait() for _ in range(results.qsize())]
