"""Bot chat → CRM client mapping, set with the /link command."""
import uuid
from sqlalchemy import Column, String, DateTime, ForeignKey, Uuid
from app.core.database import Base, utcnow


class ChatLink(Base):
    __tablename__ = "chat_links"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    chat_id = Column(String(64), nullable=False, unique=True)
    username = Column(String(255), nullable=True)
    client_id = Column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
