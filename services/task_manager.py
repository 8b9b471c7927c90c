import asyncio
from typing import Awaitable, Callable, Dict
from core.logger import logger

class TaskManager:
    """Keeps at most one in-flight task per key; later callers join the running one."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def get_or_start(self, key: str, factory: Callable[[], Awaitable]) -> asyncio.Task:
        task = self._tasks.get(key)
        if task is not None and not task.done():
            logger.debug("Joining in-flight task", key=key)
            return task

        task = asyncio.ensure_future(factory())
        self._tasks[key] = task
        logger.debug(f"Registered new task for {key}")

        # Remove from dict when done
        task.add_done_callback(lambda t: self._cleanup_task(key, t))
        return task

    def cancel_task(self, key: str):
        """Cancel the in-flight task for a key if it exists."""
        if key in self._tasks:
            task = self._tasks[key]
            if not task.done():
                task.cancel()
                logger.debug(f"Cancelled in-flight task for {key}")
            del self._tasks[key]

    def cancel_all(self):
        for key in list(self._tasks):
            self.cancel_task(key)

    def _cleanup_task(self, key: str, task: asyncio.Task):
        """Remove task from dict if it's still the registered one."""
        if key in self._tasks and self._tasks[key] == task:
            del self._tasks[key]

