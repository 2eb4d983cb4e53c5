"""Application context: builds every service once and owns the background loops."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.events import EventBus
from app.services.action_executor import ActionExecutor
from app.services.approval_gate import ApprovalGate
from app.services.audio_storage import AudioStorage
from app.services.channel_bridge import ChannelBridge
from app.services.decision_engine import DecisionEngine
from app.services.insight_extractor import InsightExtractor
from app.services.llm import LLMClient
from app.services.telegram import TelegramClient
from app.voice.stt import Transcriber
from app.workers.action_queue import ActionQueueWorker
from app.workers.base import ScheduledTask
from app.workers.bot_poller import BotPoller
from app.workers.pipeline_worker import VoiceProcessingWorker

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    session_factory: async_sessionmaker
    events: EventBus
    llm: LLMClient
    telegram: TelegramClient
    storage: AudioStorage
    transcriber: Transcriber
    extractor: InsightExtractor
    engine: DecisionEngine
    executor: ActionExecutor
    gate: ApprovalGate
    bridge: ChannelBridge
    pipeline_worker: VoiceProcessingWorker
    action_worker: ActionQueueWorker
    poller: Optional[BotPoller] = None
    _started: list[ScheduledTask] = field(default_factory=list)

    async def start(self) -> None:
        if self.telegram.is_configured:
            self.bridge.subscribe()
        if not self.settings.PIPELINE_WORKERS_ENABLED:
            logger.info("Pipeline workers disabled")
            return
        tasks: list[ScheduledTask] = [self.action_worker, self.pipeline_worker]
        if self.poller is not None:
            tasks.append(self.poller)
        for task in tasks:
            await task.start()
            self._started.append(task)

    async def stop(self) -> None:
        for task in reversed(self._started):
            await task.stop()
        self._started.clear()
        self.bridge.unsubscribe()
        await self.telegram.close()


def build_context(
    session_factory: async_sessionmaker,
    settings: Optional[Settings] = None,
    llm: Optional[LLMClient] = None,
    telegram: Optional[TelegramClient] = None,
    storage: Optional[AudioStorage] = None,
    transcriber: Optional[Transcriber] = None,
    events: Optional[EventBus] = None,
) -> AppContext:
    """Wire the services together. Collaborators can be injected (tests)."""
    settings = settings or default_settings
    events = events or EventBus()
    llm = llm or LLMClient(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        model=settings.LLM_MODEL,
        azure_api_key=settings.AZURE_OPENAI_API_KEY,
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )
    telegram = telegram or TelegramClient(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_API_BASE)
    storage = storage or AudioStorage(
        settings.AZURE_BLOB_CONNECTION_STRING, settings.AZURE_BLOB_CONTAINER, settings.MEDIA_DIR,
    )
    transcriber = transcriber or Transcriber()

    executor = ActionExecutor(
        session_factory,
        events,
        max_retries=settings.ACTION_MAX_RETRIES,
        batch_size=settings.ACTION_BATCH_SIZE,
    )
    gate = ApprovalGate(events, executor=executor, approval_ttl_hours=settings.APPROVAL_TTL_HOURS)
    bridge = ChannelBridge(telegram, gate, session_factory, events, organization_id=settings.DEFAULT_ORGANIZATION_ID)
    if telegram.is_configured:
        executor.message_sender = bridge.send_text

    engine = DecisionEngine(llm=llm, decision_ttl_hours=settings.DECISION_TTL_HOURS)
    extractor = InsightExtractor(llm)
    pipeline_worker = VoiceProcessingWorker(
        session_factory,
        transcriber,
        extractor,
        engine,
        gate,
        storage,
        events,
        telegram=telegram if telegram.is_configured else None,
        bridge=bridge if telegram.is_configured else None,
        interval=settings.WORKER_POLL_INTERVAL_SECONDS,
        batch_size=settings.WORKER_BATCH_SIZE,
        transcription_provider=settings.TRANSCRIPTION_PROVIDER,
    )
    action_worker = ActionQueueWorker(executor, interval=settings.ACTION_SWEEP_INTERVAL_SECONDS)
    poller = None
    if telegram.is_configured and settings.TELEGRAM_POLLING_ENABLED:
        poller = BotPoller(telegram, bridge, poll_timeout=settings.TELEGRAM_POLL_TIMEOUT)

    return AppContext(
        settings=settings,
        session_factory=session_factory,
        events=events,
        llm=llm,
        telegram=telegram,
        storage=storage,
        transcriber=transcriber,
        extractor=extractor,
        engine=engine,
        executor=executor,
        gate=gate,
        bridge=bridge,
        pipeline_worker=pipeline_worker,
        action_worker=action_worker,
        poller=poller,
    )
