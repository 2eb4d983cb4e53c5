"""Voice communications and their processing jobs."""

import enum
import uuid
from sqlalchemy import (
    Column, String, Text, DateTime, Float, Integer, ForeignKey, UniqueConstraint, Uuid,
)
from app.core.database import Base, JSONType, utcnow


class CommunicationChannel(str, enum.Enum):
    MICROPHONE = "microphone"
    UPLOAD = "upload"
    TELEGRAM = "telegram"


class ProcessingStatus(str, enum.Enum):
    """Shared by Communication.status and ProcessingJob.status."""
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (
    ProcessingStatus.QUEUED,
    ProcessingStatus.DOWNLOADING,
    ProcessingStatus.TRANSCRIBING,
    ProcessingStatus.SUMMARIZING,
)


class Communication(Base):
    """One recorded voice note and everything derived from it."""
    __tablename__ = "communications"
    __table_args__ = (
        UniqueConstraint("channel", "channel_id", "source_message_id", name="uq_communication_source"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)

    channel = Column(String(20), nullable=False, default=CommunicationChannel.UPLOAD)
    channel_id = Column(String(64), nullable=True, index=True)   # chat id for bot messages
    source_message_id = Column(String(64), nullable=True)
    channel_metadata = Column(JSONType, nullable=False, default=dict)

    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)
    lead_id = Column(Uuid, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)

    # Audio reference: bot file id or a storage key
    audio_file_id = Column(String(255), nullable=True)
    audio_ref = Column(String(500), nullable=True)
    audio_mime = Column(String(100), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Transcription
    transcript = Column(Text, nullable=True)
    transcript_language = Column(String(10), nullable=True)
    confidence_score = Column(Float, nullable=True)
    transcription_provider = Column(String(20), nullable=True)

    # Insights
    summary = Column(Text, nullable=True)
    subject = Column(String(100), nullable=True)
    category = Column(String(50), nullable=True)
    key_points = Column(JSONType, nullable=True)
    action_items = Column(JSONType, nullable=True)
    sentiment = Column(String(20), nullable=True)
    urgency = Column(String(20), nullable=True)
    entities = Column(JSONType, nullable=True)

    status = Column(String(20), nullable=False, default=ProcessingStatus.QUEUED, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ProcessingJob(Base):
    """Work item for the voice processing worker.

    retry_count only grows; reaching max_retries makes the job terminally failed.
    """
    __tablename__ = "processing_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    communication_id = Column(
        Uuid, ForeignKey("communications.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    source_type = Column(String(20), nullable=False)
    source_file_id = Column(String(500), nullable=True)
    source_message_id = Column(String(64), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    status = Column(String(20), nullable=False, default=ProcessingStatus.QUEUED, index=True)
    current_step = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
