"""Pydantic schemas for decisions and their typed parameter payloads.

Every decision_type has exactly one payload model; parameters are validated
against it before a Decision row is written, so the executor never sees a
free-form dict.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, field_validator, model_validator
from app.models.client import UPDATABLE_CLIENT_FIELDS
from app.models.decision import DecisionType
from app.models.property import UPDATABLE_PROPERTY_FIELDS


def to_utc_naive(value: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are taken as UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# --- payloads, keyed by decision_type -------------------------------------

class CreateLeadPayload(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    source: str = "voice_note"
    interested_in: Optional[str] = None
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    notes: Optional[str] = None
    priority: str = "normal"


class UpdateClientPayload(BaseModel):
    client_id: UUID
    updates: dict[str, Any]

    @field_validator("updates")
    @classmethod
    def only_known_fields(cls, v: dict[str, Any]) -> dict[str, Any]:
        unknown = set(v) - UPDATABLE_CLIENT_FIELDS
        if unknown:
            raise ValueError(f"unknown client fields: {sorted(unknown)}")
        if not v:
            raise ValueError("updates must not be empty")
        return v


class ScheduleAppointmentPayload(BaseModel):
    title: str
    description: Optional[str] = None
    appointment_type: str = "property_viewing"
    client_id: Optional[UUID] = None
    lead_id: Optional[UUID] = None
    property_id: Optional[UUID] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: int = Field(default=60, gt=0, le=24 * 60)
    location: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def fill_end_time(self):
        self.start_time = to_utc_naive(self.start_time)
        if self.end_time is None:
            self.end_time = self.start_time + timedelta(minutes=self.duration_minutes)
        else:
            self.end_time = to_utc_naive(self.end_time)
        return self


class CreateTaskPayload(BaseModel):
    title: str
    description: Optional[str] = None
    task_type: str = "follow_up"
    priority: str = "normal"
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[UUID] = None

    @field_validator("due_date")
    @classmethod
    def naive_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_naive(v) if v else v


class UpdatePropertyPayload(BaseModel):
    property_id: UUID
    updates: dict[str, Any]

    @field_validator("updates")
    @classmethod
    def only_known_fields(cls, v: dict[str, Any]) -> dict[str, Any]:
        unknown = set(v) - UPDATABLE_PROPERTY_FIELDS
        if unknown:
            raise ValueError(f"unknown property fields: {sorted(unknown)}")
        if not v:
            raise ValueError("updates must not be empty")
        return v


class SendMessagePayload(BaseModel):
    content: str
    client_id: Optional[UUID] = None
    lead_id: Optional[UUID] = None
    channel: str = "telegram"


class ChangeStatusPayload(BaseModel):
    client_id: UUID
    status: str


class AssignAgentPayload(BaseModel):
    client_id: UUID
    agent_id: str


class UpdateBudgetPayload(BaseModel):
    client_id: UUID
    budget_min: Optional[float] = Field(default=None, ge=0)
    budget_max: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def ordered(self):
        if self.budget_min is None and self.budget_max is None:
            raise ValueError("budget_min or budget_max is required")
        if self.budget_min is not None and self.budget_max is not None and self.budget_min > self.budget_max:
            self.budget_min, self.budget_max = self.budget_max, self.budget_min
        return self


class AddNotePayload(BaseModel):
    note_content: str
    entity_type: str = "general"
    entity_id: Optional[UUID] = None


PAYLOAD_MODELS: dict[DecisionType, type[BaseModel]] = {
    DecisionType.CREATE_LEAD: CreateLeadPayload,
    DecisionType.UPDATE_CLIENT: UpdateClientPayload,
    DecisionType.SCHEDULE_APPOINTMENT: ScheduleAppointmentPayload,
    DecisionType.CREATE_TASK: CreateTaskPayload,
    DecisionType.UPDATE_PROPERTY: UpdatePropertyPayload,
    DecisionType.SEND_MESSAGE: SendMessagePayload,
    DecisionType.CHANGE_STATUS: ChangeStatusPayload,
    DecisionType.ASSIGN_AGENT: AssignAgentPayload,
    DecisionType.UPDATE_BUDGET: UpdateBudgetPayload,
    DecisionType.ADD_NOTE: AddNotePayload,
}


def parse_parameters(decision_type: DecisionType | str, parameters: dict[str, Any]) -> BaseModel:
    """Validate raw parameters for a decision type. Raises pydantic.ValidationError."""
    model = PAYLOAD_MODELS[DecisionType(decision_type)]
    return model.model_validate(parameters)


def normalize_parameters(decision_type: DecisionType | str, parameters: dict[str, Any]) -> dict[str, Any]:
    """Validated, JSON-safe form suitable for the parameters column."""
    return parse_parameters(decision_type, parameters).model_dump(mode="json", exclude_none=True)


# --- engine input / output -------------------------------------------------

class DecisionContext(BaseModel):
    """Everything the decision engine may look at for one communication."""
    transcript: str = ""
    summary: Optional[str] = None
    key_points: list[str] = []
    action_items: list[str] = []
    sentiment: Optional[str] = None
    urgency: Optional[str] = None
    entities: dict[str, list[Any]] = {}
    client_id: Optional[UUID] = None
    client_context: Optional[dict[str, Any]] = None
    lead_id: Optional[UUID] = None
    communication_id: Optional[UUID] = None
    organization_id: Optional[str] = None


class DecisionSuggestion(BaseModel):
    """One proposed decision before it is persisted."""
    decision_type: DecisionType
    parameters: dict[str, Any]
    reasoning: str = ""
    confidence_score: float
    requires_approval: bool = True
    auto_approve_eligible: bool = False

    @field_validator("confidence_score", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        if value != value:  # NaN
            return 0.5
        return max(0.0, min(1.0, value))


class DecisionOut(BaseModel):
    id: UUID
    short_id: str
    communication_id: UUID
    organization_id: str
    decision_type: str
    action_type: str
    parameters: dict[str, Any]
    reasoning: str | None = None
    confidence_score: float
    priority: str
    requires_approval: bool
    auto_approve_eligible: bool
    status: str
    suggested_at: datetime
    expires_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_reason: str | None = None
    executed_at: datetime | None = None
    execution_result: dict | None = None
    error_message: str | None = None

    class Config:
        from_attributes = True


class DecisionResolve(BaseModel):
    actor: str
    notes: Optional[str] = None


class AutoApprovalRuleIn(BaseModel):
    rule_name: str
    decision_type: DecisionType
    organization_id: Optional[str] = None
    conditions: dict[str, Any] = {}
    is_active: bool = True
    priority: int = 0


class AutoApprovalRuleOut(BaseModel):
    id: UUID
    rule_name: str
    decision_type: str
    organization_id: str | None = None
    conditions: dict[str, Any]
    is_active: bool
    priority: int
    created_at: datetime

    class Config:
        from_attributes = True
