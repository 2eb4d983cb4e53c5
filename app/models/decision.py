"""AI-suggested CRM decisions and the rules that may auto-approve them."""

import enum
import uuid
from sqlalchemy import (
    Column, String, Text, DateTime, Float, Boolean, Integer, ForeignKey, Uuid,
)
from app.core.database import Base, JSONType, utcnow


class DecisionType(str, enum.Enum):
    CREATE_LEAD = "create_lead"
    UPDATE_CLIENT = "update_client"
    SCHEDULE_APPOINTMENT = "schedule_appointment"
    CREATE_TASK = "create_task"
    UPDATE_PROPERTY = "update_property"
    SEND_MESSAGE = "send_message"
    CHANGE_STATUS = "change_status"
    ASSIGN_AGENT = "assign_agent"
    UPDATE_BUDGET = "update_budget"
    ADD_NOTE = "add_note"


class ActionType(str, enum.Enum):
    LEAD_ACTION = "lead_action"
    CLIENT_ACTION = "client_action"
    APPOINTMENT_ACTION = "appointment_action"
    TASK_ACTION = "task_action"
    PROPERTY_ACTION = "property_action"
    COMMUNICATION_ACTION = "communication_action"


class DecisionPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DecisionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


# decision_type -> (action_type, entity_type, operation)
DECISION_ROUTING: dict[DecisionType, tuple[ActionType, str, str]] = {
    DecisionType.CREATE_LEAD: (ActionType.LEAD_ACTION, "lead", "create"),
    DecisionType.UPDATE_CLIENT: (ActionType.CLIENT_ACTION, "client", "update"),
    DecisionType.SCHEDULE_APPOINTMENT: (ActionType.APPOINTMENT_ACTION, "appointment", "create"),
    DecisionType.CREATE_TASK: (ActionType.TASK_ACTION, "task", "create"),
    DecisionType.UPDATE_PROPERTY: (ActionType.PROPERTY_ACTION, "property", "update"),
    DecisionType.SEND_MESSAGE: (ActionType.COMMUNICATION_ACTION, "communication", "create"),
    DecisionType.CHANGE_STATUS: (ActionType.CLIENT_ACTION, "client", "update"),
    DecisionType.ASSIGN_AGENT: (ActionType.CLIENT_ACTION, "client", "update"),
    DecisionType.UPDATE_BUDGET: (ActionType.CLIENT_ACTION, "client", "update"),
    DecisionType.ADD_NOTE: (ActionType.COMMUNICATION_ACTION, "communication", "create"),
}


class Decision(Base):
    """A suggested CRM mutation.

    Only the action executor moves a decision to completed or failed.
    """
    __tablename__ = "decisions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    short_id = Column(String(8), nullable=False, index=True)
    communication_id = Column(
        Uuid, ForeignKey("communications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    organization_id = Column(String(64), nullable=False, index=True)

    decision_type = Column(String(30), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)
    parameters = Column(JSONType, nullable=False, default=dict)
    reasoning = Column(Text, nullable=True)
    confidence_score = Column(Float, nullable=False)
    priority = Column(String(10), nullable=False, default=DecisionPriority.MEDIUM)
    requires_approval = Column(Boolean, nullable=False, default=True)
    auto_approve_eligible = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=DecisionStatus.PENDING, index=True)

    suggested_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=True)
    approved_by = Column(String(255), nullable=True)
    approved_at = Column(DateTime, nullable=True, index=True)
    rejected_by = Column(String(255), nullable=True)
    rejected_reason = Column(Text, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    execution_result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("short_id", kwargs["id"].hex[:8])
        super().__init__(**kwargs)


class AutoApprovalRule(Base):
    """Policy letting specific decision types skip human review.

    conditions: {"min_confidence": 0.8, "time_window": {"start": "09:00", "end": "18:00"},
                 "max_daily_approvals": 20}
    """
    __tablename__ = "auto_approval_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=True, index=True)  # NULL = every organization
    rule_name = Column(String(255), nullable=False)
    decision_type = Column(String(30), nullable=False, index=True)
    conditions = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
