"""Pydantic schemas for CRM action execution."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field

from app.core.database import utcnow


class ExecutionResult(BaseModel):
    success: bool
    message: str
    entity_id: Optional[UUID] = None
    entity_type: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class CRMActionOut(BaseModel):
    id: UUID
    decision_id: UUID
    action_type: str
    entity_type: str
    entity_id: UUID | None = None
    operation: str
    status: str
    retry_count: int
    max_retries: int
    result: dict | None = None
    error: str | None = None
    executed_at: datetime | None = None
    created_at: datetime

    class Config:
        from_attributes = True
