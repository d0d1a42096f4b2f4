"""Registry for fire-and-forget refresh tasks"""

import asyncio
import logging
from collections import deque
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Holds strong references to spawned tasks until they finish

    The event loop only keeps weak references to tasks, so a task nobody
    references can be garbage collected mid-flight. Failures are logged
    and kept until the next ``drain``; the caller that spawned the task
    never sees them.
    """

    def __init__(self, max_failures: int = 1000):
        self._tasks: set[asyncio.Task] = set()
        # Long-running hosts may never drain; keep only the most recent failures
        self._failures: deque[BaseException] = deque(maxlen=max_failures)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            self._failures.append(error)
            logger.error(
                f"Background task {task.get_name()} failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> list[BaseException]:
        """
        Wait for every task spawned so far, including ones spawned while waiting

        Returns:
            Exceptions raised by tasks that failed since the previous drain
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        failures = list(self._failures)
        self._failures.clear()
        return failures
