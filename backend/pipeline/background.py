"""
Tracked background tasks for post-commit side effects.

Side effects that must not affect an already committed settlement (event
publishing, purchase tracking) run here. Failures are logged, never raised
into the request, and shutdown waits for whatever is still running.
"""

import asyncio
from typing import Coroutine

import structlog

from pipeline.errors import EventSchemaError

logger = structlog.get_logger(component="background")


class BackgroundTasks:

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: str, **context) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                logger.warning("background_task_cancelled", task=name, **context)
                return
            error = t.exception()
            if error is None:
                return
            log_method = logger.critical if isinstance(error, EventSchemaError) else logger.error
            log_method("background_task_failed",
                       task=name,
                       error=f"{type(error).__name__}: {error}",
                       exc_info=error,
                       **context)

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task, including ones spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
