import asyncio
import logging
from typing import Awaitable, Optional, Set

from ..service_manager.base_service import BaseService

logger = logging.getLogger("axmon-core.task-queue")


class BackgroundTaskQueue(BaseService):
    """
    Background Task Queue.
    Responsibility: Run detached units of work (notification fan-out,
    remediation executions) without blocking the caller, while keeping a
    handle to every task so it can be awaited or cancelled.
    """

    def __init__(self, shutdown_grace_seconds: float = 5.0):
        super().__init__("BackgroundTaskQueue")
        self._tasks: Set[asyncio.Task] = set()
        self._shutdown_grace_seconds = shutdown_grace_seconds
        self._running = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def start(self):
        self._running = True
        logger.info("BackgroundTaskQueue started.")

    async def stop(self):
        """Give in-flight work a grace period, then cancel what is left."""
        self._running = False
        finished = await self.drain(timeout=self._shutdown_grace_seconds)
        if not finished:
            outstanding = list(self._tasks)
            logger.warning(f"Cancelling {len(outstanding)} background task(s) still running at shutdown")
            for task in outstanding:
                task.cancel()
            await asyncio.gather(*outstanding, return_exceptions=True)
        logger.info("BackgroundTaskQueue stopped.")

    def submit(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule `coro` and return its task handle immediately."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug(f"Submitted background task {task.get_name()}")
        return task

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every submitted task (including ones submitted while
        waiting) has finished. Returns False if `timeout` expired first.
        """
        while self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                return False
        return True

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.info(f"Background task {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
