"""Human approval requests and the workflows that shape them."""

import enum
import uuid
from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, ForeignKey, Uuid
from app.core.database import Base, JSONType, utcnow


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


class ApprovalWorkflow(Base):
    """Which entity/action combinations need how many approval levels.

    entity_type / action_type may be "all".
    auto_approve_conditions: {"confidence_threshold": 0.95, "max_amount": 1000000}
    """
    __tablename__ = "approval_workflows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    entity_type = Column(String(30), nullable=False, default="all")
    action_type = Column(String(30), nullable=False, default="all")
    conditions = Column(JSONType, nullable=False, default=dict)
    approval_levels = Column(Integer, nullable=False, default=1)
    auto_approve_enabled = Column(Boolean, nullable=False, default=False)
    auto_approve_conditions = Column(JSONType, nullable=False, default=dict)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ApprovalRequest(Base):
    """Durable human sign-off for one decision.

    Once status leaves pending only execution_result may change.
    """
    __tablename__ = "approval_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Uuid, nullable=True)
    action_type = Column(String(30), nullable=False)
    decision_id = Column(
        Uuid, ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    workflow_id = Column(Uuid, ForeignKey("approval_workflows.id", ondelete="SET NULL"), nullable=True)

    requested_by = Column(String(255), nullable=False)
    requested_at = Column(DateTime, default=utcnow, nullable=False)
    current_level = Column(Integer, nullable=False, default=1)
    max_level = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=ApprovalStatus.PENDING, index=True)
    priority = Column(String(10), nullable=False, default="medium")

    change_summary = Column(Text, nullable=True)
    proposed_changes = Column(JSONType, nullable=False, default=dict)
    request_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    approvals = Column(JSONType, nullable=False, default=list)  # one entry per level signed

    expires_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    execution_result = Column(JSONType, nullable=True)
