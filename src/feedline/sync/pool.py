"""Bounded worker pool for fanning out per-feed work.

A fixed number of workers pull items from a shared queue and post one
result per item to a results queue. The caller drains results until every
item is accounted for, so no more than ``concurrency`` operations are ever
in flight.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class PoolResult(Generic[T, R]):
    """What one worker produced for one item."""

    item: T
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int,
    on_start: Callable[[T], None] | None = None,
    on_finish: Callable[[T], None] | None = None,
    on_result: Callable[[PoolResult[T, R]], None] | None = None,
) -> list[PoolResult[T, R]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Exceptions raised by ``worker`` are captured on the item's result rather
    than propagated. Cancelling the caller cancels every worker.

    Args:
        items: Work items, started in order.
        worker: Coroutine function applied to each item.
        concurrency: Maximum simultaneous calls to ``worker``.
        on_start: Called just before an item's work begins.
        on_finish: Called in the worker as soon as an item's work ends, before
            its result is posted, so start and finish calls always pair up.
        on_result: Called as each result is drained, in completion order.

    Returns:
        Results in completion order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    if not items:
        return []

    work: asyncio.Queue[T] = asyncio.Queue()
    for item in items:
        work.put_nowait(item)
    results: asyncio.Queue[PoolResult[T, R]] = asyncio.Queue()

    async def run_worker() -> None:
        while True:
            try:
                item = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                if on_start is not None:
                    on_start(item)
                try:
                    value = await worker(item)
                finally:
                    if on_finish is not None:
                        on_finish(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await results.put(PoolResult(item=item, error=e))
            else:
                await results.put(PoolResult(item=item, value=value))

    workers = [asyncio.create_task(run_worker()) for _ in range(min(concurrency, len(items)))]
    drained: list[PoolResult[T, R]] = []
    try:
        while len(drained) < len(items):
            result = await results.get()
            drained.append(result)
            if on_result is not None:
                on_result(result)
    finally:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
    return drained
