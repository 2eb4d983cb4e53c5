"""Voice processing worker.

Drives each queued voice note through download -> transcription ->
insights -> decisions -> approval routing, persisting after every stage.
A job picked up again after a crash skips the stages whose output is
already stored.
"""

import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import utcnow
from app.core.events import COMMUNICATION_STATUS, DECISION_CREATED, EventBus
from app.core.exceptions import TranscriptionError
from app.models.client import Client
from app.models.communication import (
    ACTIVE_STATUSES, Communication, CommunicationChannel, ProcessingJob, ProcessingStatus,
)
from app.models.decision import Decision, DecisionStatus
from app.schemas.decision import DecisionContext
from app.services.approval_gate import ApprovalGate
from app.services.audio_storage import AudioStorage
from app.services.decision_engine import DecisionEngine
from app.services.insight_extractor import InsightExtractor
from app.services.telegram import TelegramClient
from app.voice.audio import sniff_format
from app.voice.stt import Transcriber
from app.workers.base import ScheduledTask

logger = logging.getLogger(__name__)


class VoiceProcessingWorker(ScheduledTask):
    name = "voice-processing-worker"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        transcriber: Transcriber,
        extractor: InsightExtractor,
        engine: DecisionEngine,
        gate: ApprovalGate,
        storage: AudioStorage,
        events: EventBus,
        telegram: Optional[TelegramClient] = None,
        bridge=None,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        transcription_provider: Optional[str] = None,
    ):
        super().__init__(interval if interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS)
        self.session_factory = session_factory
        self.transcriber = transcriber
        self.extractor = extractor
        self.engine = engine
        self.gate = gate
        self.storage = storage
        self.events = events
        self.telegram = telegram
        self.bridge = bridge
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.transcription_provider = transcription_provider or settings.TRANSCRIPTION_PROVIDER
        self._processing: set[UUID] = set()

    async def run_once(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProcessingJob.id)
                .where(and_(
                    ProcessingJob.status.in_(ACTIVE_STATUSES),
                    ProcessingJob.retry_count < ProcessingJob.max_retries,
                ))
                .order_by(ProcessingJob.created_at)
                .limit(self.batch_size)
            )
            job_ids = [job_id for job_id in result.scalars().all() if job_id not in self._processing]

        for job_id in job_ids:
            await self.process_job(job_id)
        return len(job_ids)

    async def process_job(self, job_id: UUID) -> bool:
        """Run one job to completion or failure. Never raises."""
        if job_id in self._processing:
            return False
        self._processing.add(job_id)
        try:
            async with self.session_factory() as db:
                job = await db.get(ProcessingJob, job_id)
                if job is None:
                    return False
                communication = await db.get(Communication, job.communication_id)
                try:
                    await self._process(db, job, communication)
                    return True
                except Exception as e:
                    logger.error("Job %s failed at %s: %s", job_id, job.current_step, e)
                    await db.rollback()
                    await self._handle_failure(db, job_id, e)
                    return False
        finally:
            self._processing.discard(job_id)

    async def _process(self, db: AsyncSession, job: ProcessingJob, communication: Communication) -> None:
        if not communication.transcript:
            if job.status != ProcessingStatus.TRANSCRIBING:
                await self._set_status(db, job, communication, ProcessingStatus.DOWNLOADING, "download")
            audio = await self._fetch_audio(db, job, communication)

            await self._set_status(db, job, communication, ProcessingStatus.TRANSCRIBING, "transcribe")
            result = await self.transcriber.transcribe(audio, provider=self.transcription_provider)
            communication.transcript = result.text
            communication.transcript_language = result.language
            communication.confidence_score = result.confidence
            communication.transcription_provider = result.provider
            if result.duration_seconds:
                communication.duration_seconds = result.duration_seconds
            await db.commit()

        if not communication.summary:
            await self._set_status(db, job, communication, ProcessingStatus.SUMMARIZING, "summarize")
            client_context = await self._client_context(db, communication)
            insights = await self.extractor.extract(communication.transcript, client_context)
            communication.summary = insights.summary
            communication.subject = insights.subject
            communication.category = insights.category
            communication.key_points = insights.key_points
            communication.action_items = insights.action_items
            communication.sentiment = insights.sentiment
            communication.urgency = insights.urgency
            communication.entities = insights.entities
            await db.commit()

        decisions = await self._decisions_for(db, communication.id)
        if not decisions:
            job.current_step = "decide"
            await db.commit()
            context = DecisionContext(
                transcript=communication.transcript,
                summary=communication.summary,
                key_points=communication.key_points or [],
                action_items=communication.action_items or [],
                sentiment=communication.sentiment,
                urgency=communication.urgency,
                entities=communication.entities or {},
                client_id=communication.client_id,
                client_context=await self._client_context(db, communication),
                lead_id=communication.lead_id,
                communication_id=communication.id,
                organization_id=communication.organization_id,
            )
            suggestions = await self.engine.analyze(context)
            decisions = await self.engine.create_decisions(db, suggestions, communication)
            await self.events.publish(DECISION_CREATED, {
                "communication_id": str(communication.id),
                "decision_ids": [str(d.id) for d in decisions],
            })

        job.current_step = "route"
        await db.commit()
        for decision in decisions:
            if decision.status in (DecisionStatus.PENDING, DecisionStatus.APPROVED):
                await self.gate.route_decision(db, decision, notify_channel=False)

        now = utcnow()
        job.status = ProcessingStatus.COMPLETED
        job.current_step = "done"
        job.completed_at = now
        job.error_message = None
        communication.status = ProcessingStatus.COMPLETED
        communication.error_message = None
        await db.commit()
        logger.info("Voice note %s processed: %d decisions", communication.id, len(decisions))
        await self.events.publish(COMMUNICATION_STATUS, {
            "communication_id": str(communication.id),
            "status": ProcessingStatus.COMPLETED.value,
        })

        if self.bridge is not None and self._is_chat(communication):
            decisions = await self._decisions_for(db, communication.id)
            await self.bridge.send_decision_suggestions(
                communication.channel_id,
                decisions,
                communication.summary,
                reply_to_message_id=(communication.channel_metadata or {}).get("message_id"),
            )

    @staticmethod
    def _is_chat(communication: Communication) -> bool:
        return communication.channel == CommunicationChannel.TELEGRAM and bool(communication.channel_id)

    async def _decisions_for(self, db: AsyncSession, communication_id: UUID) -> list[Decision]:
        result = await db.execute(
            select(Decision)
            .where(Decision.communication_id == communication_id)
            .order_by(Decision.suggested_at, Decision.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _set_status(
        self, db: AsyncSession, job: ProcessingJob, communication: Communication,
        status: ProcessingStatus, step: str,
    ) -> None:
        job.status = status
        job.current_step = step
        communication.status = status
        await db.commit()
        await self.events.publish(COMMUNICATION_STATUS, {
            "communication_id": str(communication.id),
            "status": status.value,
        })

    async def _fetch_audio(self, db: AsyncSession, job: ProcessingJob, communication: Communication) -> bytes:
        if communication.audio_ref:
            audio = await self.storage.load(communication.audio_ref)
            if audio:
                return audio
            logger.warning("Stored audio %s missing for %s", communication.audio_ref, communication.id)

        if job.source_type != CommunicationChannel.TELEGRAM.value or not job.source_file_id:
            raise TranscriptionError(f"No audio available for communication {communication.id}")
        if self.telegram is None:
            raise TranscriptionError("Telegram client not configured; cannot download voice note")

        audio = await self.telegram.download_file(job.source_file_id)
        fmt = sniff_format(audio)
        key = f"{communication.id}.{fmt if fmt != 'unknown' else 'ogg'}"
        try:
            await self.storage.save(key, audio)
            communication.audio_ref = key
            await db.commit()
        except Exception as e:
            logger.error("Could not store audio for %s: %s", communication.id, e)
        return audio

    async def _client_context(self, db: AsyncSession, communication: Communication) -> Optional[dict[str, Any]]:
        if not communication.client_id:
            return None
        client = await db.get(Client, communication.client_id)
        if client is None:
            return None
        return {
            "name": client.name,
            "status": client.status,
            "client_type": client.client_type,
            "budget_min": client.budget_min,
            "budget_max": client.budget_max,
            "preferences": client.preferences,
        }

    async def _handle_failure(self, db: AsyncSession, job_id: UUID, error: Exception) -> None:
        job = await db.get(ProcessingJob, job_id, populate_existing=True)
        communication = await db.get(Communication, job.communication_id, populate_existing=True)
        reason = str(error) or error.__class__.__name__

        job.retry_count += 1
        job.error_message = reason[:2000]
        terminal = job.retry_count >= job.max_retries
        if terminal:
            job.status = ProcessingStatus.FAILED
            communication.status = ProcessingStatus.FAILED
            communication.error_message = reason[:2000]
        else:
            job.status = ProcessingStatus.QUEUED
            communication.status = ProcessingStatus.QUEUED
        await db.commit()

        logger.warning(
            "Job %s attempt %d/%d failed%s", job.id, job.retry_count, job.max_retries,
            " permanently" if terminal else ", requeued",
        )
        await self.events.publish(COMMUNICATION_STATUS, {
            "communication_id": str(communication.id),
            "status": ProcessingStatus(communication.status).value,
            "error": reason[:500],
        })

        if terminal and self.bridge is not None and self._is_chat(communication):
            await self.bridge.send_error_notification(
                communication.channel_id,
                reason,
                reply_to_message_id=(communication.channel_metadata or {}).get("message_id"),
            )
