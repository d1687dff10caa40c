import asyncio
import logging
from typing import Awaitable

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Fire-and-forget tasks whose failures end up in the log, not in a response.

    Strong references are kept until each task finishes so the event loop
    cannot collect them mid-flight.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background task %s failed", task.get_name(), exc_info=exc)

    async def drain(self):
        """Wait for everything spawned so far (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
