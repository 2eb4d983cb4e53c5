"""Tests for the background loops: bot polling, action sweep and scheduling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import TelegramConflictError
from app.workers.action_queue import ActionQueueWorker
from app.workers.base import ScheduledTask
from app.workers.bot_poller import BotPoller


def _poller(updates):
    telegram = MagicMock()
    telegram.delete_webhook = AsyncMock(return_value=True)
    telegram.get_updates = AsyncMock(return_value=updates)
    bridge = MagicMock()
    bridge.process_update = AsyncMock()
    return BotPoller(telegram, bridge, poll_timeout=0, conflict_backoff=0.01), telegram, bridge


@pytest.mark.asyncio
async def test_poller_clears_webhook_and_advances_offset():
    poller, telegram, bridge = _poller([{"update_id": 41}, {"update_id": 42}])

    assert await poller.run_once() == 2
    await poller.run_once()

    telegram.delete_webhook.assert_awaited_once()
    assert poller.offset == 43
    assert telegram.get_updates.await_args.kwargs["offset"] == 43
    assert bridge.process_update.await_count == 4


@pytest.mark.asyncio
async def test_poller_keeps_going_when_one_update_fails():
    poller, _, bridge = _poller([{"update_id": 1}, {"update_id": 2}])
    bridge.process_update.side_effect = [RuntimeError("bad update"), None]

    assert await poller.run_once() == 2
    assert poller.offset == 3
    assert bridge.process_update.await_count == 2


@pytest.mark.asyncio
async def test_poller_resets_offset_on_conflict():
    poller, telegram, bridge = _poller([])
    poller.offset = 10
    telegram.get_updates.side_effect = TelegramConflictError("Conflict: terminated by other getUpdates request", 409)

    assert await poller.run_once() == 0
    assert poller.offset is None
    bridge.process_update.assert_not_awaited()


@pytest.mark.asyncio
async def test_action_queue_recovers_before_sweeping():
    executor = MagicMock()
    executor.recover_stale = AsyncMock(return_value=0)
    executor.sweep = AsyncMock(return_value=3)
    worker = ActionQueueWorker(executor, interval=60)

    await worker.start()
    await asyncio.sleep(0.01)
    await worker.stop(timeout=1)

    executor.recover_stale.assert_awaited_once()
    executor.sweep.assert_awaited()
    assert await worker.run_once() == 3


class CountingTask(ScheduledTask):
    name = "counting"

    def __init__(self):
        super().__init__(interval=0.01)
        self.runs = 0

    async def run_once(self):
        self.runs += 1
        if self.runs == 1:
            raise RuntimeError("first run breaks")


@pytest.mark.asyncio
async def test_scheduled_task_survives_errors_and_stops():
    task = CountingTask()

    await task.start()
    assert task.running is True
    await asyncio.sleep(0.05)
    await task.stop(timeout=1)

    assert task.running is False
    assert task.runs >= 2
