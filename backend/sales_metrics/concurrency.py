"""Bounded fan-out: a work queue drained by a fixed number of workers."""

from __future__ import annotations

import asyncio
import os
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

MAX_CONCURRENCY = int(os.environ.get("METRICS_MAX_CONCURRENCY", "10"))


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int = MAX_CONCURRENCY,
) -> list[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    Results come back in input order. The first exception raised by a
    worker propagates to the caller.
    """
    results: list = [None] * len(items)
    if not items:
        return results

    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    async def _drain() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await worker(item)

    workers = max(1, min(limit, len(items)))
    await asyncio.gather(*(_drain() for _ in range(workers)))
    return results
