from sqlalchemy import Column, String, Text, Boolean, DateTime, Uuid
import uuid
import enum

from app.core.database import Base, JSONType, utcnow


class NotificationType(str, enum.Enum):
    SYSTEM = "system"
    APPOINTMENT = "appointment"
    TASK = "task"
    APPROVAL = "approval"


class Notification(Base):
    """In-app notification shown to agents of an organization."""
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    recipient = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default=NotificationType.SYSTEM)
    priority = Column(String(20), nullable=False, default="normal")
    data = Column(JSONType, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
