"""Client model (existing customers of the agency)."""
import uuid
from sqlalchemy import Column, String, Text, DateTime, Float, Uuid
from app.core.database import Base, JSONType, utcnow

# Columns a decision is allowed to write through update_client & friends.
UPDATABLE_CLIENT_FIELDS = frozenset({
    "name", "email", "phone", "status", "client_type", "budget_min",
    "budget_max", "assigned_agent_id", "preferences", "notes",
})


class Client(Base):
    __tablename__ = "clients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    status = Column(String(30), nullable=False, default="active", index=True)
    client_type = Column(String(30), nullable=False, default="buyer")
    budget_min = Column(Float, nullable=True)
    budget_max = Column(Float, nullable=True)
    assigned_agent_id = Column(String(64), nullable=True)
    preferences = Column(JSONType, nullable=False, default=dict)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
