"""
Rate-limited task pool shared by the harvester and the drafting loop.

Two dispatch disciplines over the same primitive:

- ``map``: ``concurrency`` workers pull items from a queue; each worker
  sleeps ``dispatch_delay`` between the items it takes, so at most
  ``concurrency`` calls are ever in flight.
- ``map_batches``: items run ``concurrency`` at a time with
  ``dispatch_delay`` between batches.

Results come back in input order. If any task raises, every sibling task is
cancelled and the first error propagates; callers that want per-item failure
tolerance catch inside their own coroutine.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def gather_or_cancel(tasks: List["asyncio.Future"]) -> list:
    """Await ``tasks`` together; on the first failure cancel the rest and re-raise."""
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class TaskPool:
    """Bounded worker pool with a fixed inter-dispatch delay."""

    def __init__(self, concurrency: int, dispatch_delay: float = 0.0):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.dispatch_delay = dispatch_delay

    async def map(self, fn: Callable[[T], Awaitable[R]], items: Sequence[T]) -> List[R]:
        """Run ``fn`` over ``items`` with at most ``concurrency`` in flight."""
        items = list(items)
        if not items:
            return []
        results: List[R] = [None] * len(items)
        queue: "asyncio.Queue[int]" = asyncio.Queue()
        for index in range(len(items)):
            queue.put_nowait(index)

        async def worker() -> None:
            first = True
            while True:
                try:
                    index = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if not first and self.dispatch_delay > 0:
                    await asyncio.sleep(self.dispatch_delay)
                first = False
                results[index] = await fn(items[index])

        workers = [asyncio.ensure_future(worker()) for _ in range(min(self.concurrency, len(items)))]
        await gather_or_cancel(workers)
        logger.debug(f"TaskPool.map finished {len(items)} items with {len(workers)} workers")
        return results

    async def map_batches(self, fn: Callable[[T], Awaitable[R]], items: Sequence[T]) -> List[R]:
        """Run ``fn`` over ``items`` in consecutive batches of ``concurrency``."""
        items = list(items)
        results: List[R] = []
        size = self.concurrency
        for start in range(0, len(items), size):
            tasks = [asyncio.ensure_future(fn(item)) for item in items[start:start + size]]
            results.extend(await gather_or_cancel(tasks))
            if start + size < len(items) and self.dispatch_delay > 0:
                await asyncio.sleep(self.dispatch_delay)
        return results
