"""Task model (follow-ups, reminders)."""
import enum
import uuid
from sqlalchemy import Column, String, Text, DateTime, Uuid
from app.core.database import Base, utcnow


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    task_type = Column(String(30), nullable=False, default="follow_up")
    priority = Column(String(20), nullable=False, default="normal")
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING, index=True)
    due_date = Column(DateTime, nullable=True, index=True)
    assigned_to = Column(String(64), nullable=True)
    related_entity_type = Column(String(30), nullable=True)
    related_entity_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
