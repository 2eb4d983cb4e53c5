"""Long-polling alternative to the Telegram webhook."""

import asyncio
import logging
from typing import Optional

from app.core.config import settings
from app.core.exceptions import TelegramConflictError
from app.services.telegram import TelegramClient
from app.workers.base import ScheduledTask

logger = logging.getLogger(__name__)

CONFLICT_BACKOFF_SECONDS = 5.0


class BotPoller(ScheduledTask):
    """Feeds getUpdates results to the channel bridge.

    The long poll itself is the wait, so the loop interval is near zero.
    """

    name = "telegram-bot-poller"

    def __init__(
        self,
        telegram: TelegramClient,
        bridge,
        poll_timeout: Optional[int] = None,
        conflict_backoff: float = CONFLICT_BACKOFF_SECONDS,
    ):
        super().__init__(interval=0.1)
        self.telegram = telegram
        self.bridge = bridge
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.TELEGRAM_POLL_TIMEOUT
        self.conflict_backoff = conflict_backoff
        self.offset: Optional[int] = None
        self._webhook_cleared = False

    async def run_once(self) -> int:
        if not self._webhook_cleared:
            # getUpdates refuses to run while a webhook is set
            await self.telegram.delete_webhook()
            self._webhook_cleared = True

        try:
            updates = await self.telegram.get_updates(offset=self.offset, timeout=self.poll_timeout)
        except TelegramConflictError as e:
            logger.warning("Polling conflict (%s); resetting offset and backing off", e.description)
            self.offset = None
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.conflict_backoff)
            except asyncio.TimeoutError:
                pass
            return 0

        for update in updates:
            self.offset = update["update_id"] + 1
            try:
                await self.bridge.process_update(update)
            except Exception as e:
                logger.exception("Failed to process update %s: %s", update.get("update_id"), e)
        return len(updates)
