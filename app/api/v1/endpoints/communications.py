"""Voice note upload and processing status endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.database import get_db
from app.core.deps import get_context
from app.models.communication import (
    Communication, CommunicationChannel, ProcessingJob, ProcessingStatus,
)
from app.models.decision import Decision
from app.schemas.communication import (
    CommunicationDetail, CommunicationOut, ProcessingJobOut, UploadAccepted,
)
from app.schemas.decision import DecisionOut
from app.voice.audio import MAX_AUDIO_BYTES, mime_type_for, sniff_format

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/upload", response_model=UploadAccepted, status_code=202)
async def upload_voice_note(
    audio: UploadFile = File(...),
    organization_id: Optional[str] = Form(None),
    client_id: Optional[UUID] = Form(None),
    channel: CommunicationChannel = Form(CommunicationChannel.UPLOAD),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Store an uploaded or recorded voice note and queue it for processing."""
    if channel == CommunicationChannel.TELEGRAM:
        raise HTTPException(status_code=400, detail="Telegram voice notes arrive via the webhook")
    data = await audio.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty audio file")
    if len(data) > MAX_AUDIO_BYTES:
        raise HTTPException(status_code=413, detail="Audio file too large (max 25MB)")

    communication = Communication(
        organization_id=organization_id or context.settings.DEFAULT_ORGANIZATION_ID,
        channel=channel,
        client_id=client_id,
        channel_metadata={"filename": audio.filename, "content_type": audio.content_type},
        audio_mime=audio.content_type or mime_type_for(data),
        status=ProcessingStatus.QUEUED,
    )
    db.add(communication)
    await db.flush()

    fmt = sniff_format(data)
    key = f"{communication.id}.{fmt if fmt != 'unknown' else 'bin'}"
    try:
        await context.storage.save(key, data, content_type=communication.audio_mime)
    except Exception as e:
        await db.rollback()
        logger.error("Failed to store upload: %s", e)
        raise HTTPException(status_code=502, detail="Could not store audio")
    communication.audio_ref = key

    job = ProcessingJob(
        communication_id=communication.id,
        source_type=channel.value,
        source_file_id=key,
        max_retries=context.settings.JOB_MAX_RETRIES,
        status=ProcessingStatus.QUEUED,
    )
    db.add(job)
    await db.commit()
    logger.info("Voice note %s uploaded (%d bytes, %s)", communication.id, len(data), fmt)
    return UploadAccepted(communication_id=communication.id, job_id=job.id, status=ProcessingStatus.QUEUED.value)


@router.get("/", response_model=list[CommunicationOut])
async def list_communications(
    status: Optional[ProcessingStatus] = None,
    client_id: Optional[UUID] = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(Communication)
    if status:
        query = query.where(Communication.status == status.value)
    if client_id:
        query = query.where(Communication.client_id == client_id)
    result = await db.execute(query.order_by(Communication.created_at.desc()).limit(limit).offset(offset))
    return result.scalars().all()


@router.get("/{communication_id}", response_model=CommunicationDetail)
async def get_communication(communication_id: UUID, db: AsyncSession = Depends(get_db)):
    """Communication with its processing job and the decisions suggested from it."""
    communication = await db.get(Communication, communication_id)
    if not communication:
        raise HTTPException(status_code=404, detail="Communication not found")

    job = (await db.execute(
        select(ProcessingJob).where(ProcessingJob.communication_id == communication_id)
    )).scalar_one_or_none()
    decisions = (await db.execute(
        select(Decision).where(Decision.communication_id == communication_id).order_by(Decision.suggested_at)
    )).scalars().all()

    detail = CommunicationDetail.model_validate(communication)
    detail.job = ProcessingJobOut.model_validate(job) if job else None
    detail.decisions = [DecisionOut.model_validate(d) for d in decisions]
    return detail


@router.post("/{communication_id}/retry", response_model=CommunicationOut)
async def retry_communication(
    communication_id: UUID,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Give a terminally failed voice note a fresh set of attempts."""
    communication = await db.get(Communication, communication_id)
    if not communication:
        raise HTTPException(status_code=404, detail="Communication not found")
    job = (await db.execute(
        select(ProcessingJob).where(ProcessingJob.communication_id == communication_id)
    )).scalar_one_or_none()
    if job is None or job.status != ProcessingStatus.FAILED:
        raise HTTPException(status_code=409, detail="Only failed voice notes can be retried")

    # retry_count never goes back; extend the ceiling instead
    job.max_retries = job.retry_count + context.settings.JOB_MAX_RETRIES
    job.status = ProcessingStatus.QUEUED
    job.error_message = None
    communication.status = ProcessingStatus.QUEUED
    communication.error_message = None
    await db.commit()
    logger.info("Voice note %s requeued by request", communication_id)
    return communication
