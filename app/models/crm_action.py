"""Execution ledger: one row per decision that reached the CRM store."""

import enum
import uuid
from sqlalchemy import Column, String, Text, DateTime, Integer, ForeignKey, Uuid
from app.core.database import Base, JSONType, utcnow


class CRMActionStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class CRMAction(Base):
    __tablename__ = "crm_actions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # Unique: the cross-process backstop against executing a decision twice
    decision_id = Column(
        Uuid, ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    organization_id = Column(String(64), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Uuid, nullable=True)
    operation = Column(String(10), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=CRMActionStatus.QUEUED, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
