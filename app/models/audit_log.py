from sqlalchemy import Column, String, DateTime, Uuid
import uuid

from app.core.database import Base, JSONType, utcnow


class AuditLog(Base):
    """Append-only trail of approval actions."""
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    actor = Column(String(255), nullable=False)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Uuid, nullable=True, index=True)
    details = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
