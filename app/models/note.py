"""Notes attached to CRM entities (also records outbound messages)."""
import uuid
from sqlalchemy import Column, String, Text, DateTime, Uuid
from app.core.database import Base, utcnow


class Note(Base):
    __tablename__ = "notes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(30), nullable=False, default="general")
    entity_id = Column(Uuid, nullable=True, index=True)
    note_type = Column(String(30), nullable=False, default="voice_note")
    content = Column(Text, nullable=False)
    communication_id = Column(Uuid, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
