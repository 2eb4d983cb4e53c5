"""Pydantic schemas for communications and processing jobs."""

from datetime import datetime
from typing import Any
from uuid import UUID
from pydantic import BaseModel

from app.schemas.decision import DecisionOut


class TranscriptionResult(BaseModel):
    text: str
    language: str | None = None
    confidence: float = 0.0
    duration_seconds: float | None = None
    provider: str


class CommunicationOut(BaseModel):
    id: UUID
    organization_id: str
    channel: str
    channel_id: str | None = None
    client_id: UUID | None = None
    lead_id: UUID | None = None
    transcript: str | None = None
    transcript_language: str | None = None
    confidence_score: float | None = None
    summary: str | None = None
    subject: str | None = None
    key_points: list[str] | None = None
    action_items: list[str] | None = None
    sentiment: str | None = None
    urgency: str | None = None
    entities: dict[str, Any] | None = None
    status: str
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProcessingJobOut(BaseModel):
    id: UUID
    communication_id: UUID
    source_type: str
    retry_count: int
    max_retries: int
    status: str
    current_step: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class CommunicationDetail(CommunicationOut):
    job: ProcessingJobOut | None = None
    decisions: list[DecisionOut] = []


class UploadAccepted(BaseModel):
    communication_id: UUID
    job_id: UUID
    status: str
