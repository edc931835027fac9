"""
Bounded fan-out over a shared pending queue.

``run_bounded`` starts at most ``concurrency`` workers; each repeatedly
claims the next item from the queue and awaits its handler before claiming
another, so no more than ``concurrency`` handlers are ever in flight.

The first handler failure propagates to the caller once every handler
already in flight has finished; in-flight handlers are not cancelled, but no
worker claims a new item after a failure has been seen.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, TypeVar

logger = logging.getLogger("syncer.worker_pool")

T = TypeVar("T")

DEFAULT_CONCURRENCY = 3


async def run_bounded(
    items: Iterable[T],
    handler: Callable[[T], Awaitable[None]],
    concurrency: int = DEFAULT_CONCURRENCY,
    name: str = "sync-worker",
) -> int:
    """Process every item with ``handler`` using at most ``concurrency`` tasks.

    Returns:
        Number of items whose handler completed successfully.

    Raises:
        ValueError: If ``concurrency`` is less than 1.
        Exception: The first exception raised by any handler.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    queue: asyncio.Queue[T] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    if queue.empty():
        return 0

    failed = asyncio.Event()
    first_error: list[BaseException] = []
    completed = 0

    async def _worker() -> None:
        nonlocal completed
        while not failed.is_set():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await handler(item)
            except BaseException as exc:
                if not failed.is_set():
                    first_error.append(exc)
                failed.set()
                raise
            finally:
                queue.task_done()
            completed += 1

    worker_count = min(concurrency, queue.qsize())
    workers = [
        asyncio.create_task(_worker(), name=f"{name}-{idx}")
        for idx in range(worker_count)
    ]
    logger.debug("Started %d worker(s) for %d item(s)", worker_count, queue.qsize())

    await asyncio.gather(*workers, return_exceptions=True)
    if first_error:
        raise first_error[0]
    return completed
