import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callback on a fixed interval in its own asyncio task.

    ``cancel()`` clears the timer immediately; ``stop()`` additionally waits
    until the task has finished.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[object]], *, run_immediately: bool = False):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug(f"[TIMER] Started {self.name} every {self.interval}s")

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            logger.debug(f"[TIMER] Cancelled {self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if self._run_immediately:
            await self._callback()
        while True:
            await asyncio.sleep(self.interval)
            await self._callback()
