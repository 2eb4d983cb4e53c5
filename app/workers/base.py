"""Periodic background task with cooperative shutdown."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Calls run_once() every `interval` seconds until stop().

    The stop event doubles as the sleep, so stop() interrupts the wait
    between iterations. An exception in one iteration is logged and the
    loop carries on.
    """

    name = "scheduled-task"

    def __init__(self, interval: float):
        self.interval = interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Started %s (every %.1fs)", self.name, self.interval)

    async def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop within %.0fs, cancelling", self.name, timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stopped %s", self.name)

    async def run_once(self) -> None:
        raise NotImplementedError

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("%s iteration failed: %s", self.name, e)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
