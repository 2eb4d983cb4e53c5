"""Lead model."""
import enum
import re
import uuid
from sqlalchemy import Column, String, Text, DateTime, Float, UniqueConstraint, Uuid
from app.core.database import Base, utcnow


class LeadStage(str, enum.Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"


def normalize_phone(phone: str | None) -> str | None:
    """Digits only, keeping the last 10 so '+91 98765-43210' == '9876543210'."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None
    return digits[-10:]


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (
        UniqueConstraint("organization_id", "phone_normalized", name="uq_lead_phone"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    phone_normalized = Column(String(20), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    source = Column(String(50), nullable=False, default="voice_note")
    interested_in = Column(String(500), nullable=True)
    budget_min = Column(Float, nullable=True)
    budget_max = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    priority = Column(String(20), nullable=False, default="normal")
    stage = Column(String(20), nullable=False, default=LeadStage.NEW, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
