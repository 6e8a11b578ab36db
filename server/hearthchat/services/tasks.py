import asyncio
import logging
import os
from typing import Awaitable, Optional, Set

BACKGROUND_TASK_LIMIT = int(os.getenv("BACKGROUND_TASK_LIMIT", "4"))

logger = logging.getLogger(__name__)


class BackgroundTaskPool:
    """Supervised fire-and-forget work: extraction, indexing.

    At most ``limit`` jobs run at once; the rest wait on the semaphore. Failures
    are logged from the done-callback and never reach the request that spawned
    them.
    """

    def __init__(self, limit: int = BACKGROUND_TASK_LIMIT):
        self._semaphore = asyncio.Semaphore(limit)
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> Optional[asyncio.Task]:
        if self._closed:
            logger.warning("Background pool closed, dropping task %s", name)
            coro.close()
            return None
        task = asyncio.create_task(self._run(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _run(self, coro: Awaitable) -> None:
        async with self._semaphore:
            await coro

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every task, including ones spawned meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
