"""Background sweep of the CRM action queue."""

import logging
from typing import Optional

from app.core.config import settings
from app.services.action_executor import ActionExecutor
from app.workers.base import ScheduledTask

logger = logging.getLogger(__name__)


class ActionQueueWorker(ScheduledTask):
    name = "action-queue-worker"

    def __init__(self, executor: ActionExecutor, interval: Optional[float] = None):
        super().__init__(interval if interval is not None else settings.ACTION_SWEEP_INTERVAL_SECONDS)
        self.executor = executor

    async def start(self) -> None:
        await self.executor.recover_stale()
        await super().start()

    async def run_once(self) -> int:
        return await self.executor.sweep()
