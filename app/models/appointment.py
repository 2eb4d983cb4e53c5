"""Appointment model (property viewings, meetings)."""

from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, Uuid
import uuid
import enum
from app.core.database import Base, utcnow


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    appointment_type = Column(String(50), nullable=False, default="property_viewing")

    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True)
    lead_id = Column(Uuid, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    property_id = Column(Uuid, ForeignKey("properties.id", ondelete="SET NULL"), nullable=True)

    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    location = Column(String(500), nullable=True)
    status = Column(String(20), default=AppointmentStatus.SCHEDULED, nullable=False, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
