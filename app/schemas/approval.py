"""Pydantic schemas for the approval gate."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel


class PermissionResult(BaseModel):
    """Outcome of a permission check. allowed is never True: callers must
    either auto-approve via policy or open an approval request."""
    allowed: bool = False
    requires_approval: bool = True
    auto_approve_eligible: bool = False
    workflow_id: Optional[UUID] = None
    max_level: int = 1
    reason: Optional[str] = None


class ApprovalRequestCreate(BaseModel):
    organization_id: str
    entity_type: str
    action_type: str
    decision_id: UUID
    entity_id: Optional[UUID] = None
    workflow_id: Optional[UUID] = None
    max_level: int = 1
    priority: str = "medium"
    change_summary: Optional[str] = None
    proposed_changes: dict[str, Any] = {}
    metadata: dict[str, Any] = {}


class ApprovalAction(BaseModel):
    approver_id: str
    notes: Optional[str] = None


class ApprovalRequestOut(BaseModel):
    id: UUID
    organization_id: str
    entity_type: str
    entity_id: UUID | None = None
    action_type: str
    decision_id: UUID
    workflow_id: UUID | None = None
    requested_by: str
    requested_at: datetime
    current_level: int
    max_level: int
    status: str
    priority: str
    change_summary: str | None = None
    proposed_changes: dict[str, Any]
    expires_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    execution_result: dict | None = None

    class Config:
        from_attributes = True
