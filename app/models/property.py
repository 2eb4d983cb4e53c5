"""Property listing model."""
import uuid
from sqlalchemy import Column, String, Text, DateTime, Float, Uuid
from app.core.database import Base, utcnow

UPDATABLE_PROPERTY_FIELDS = frozenset({
    "title", "status", "price", "property_type", "location", "description",
})


class Property(Base):
    __tablename__ = "properties"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    property_type = Column(String(30), nullable=True)
    location = Column(String(500), nullable=True)
    price = Column(Float, nullable=True)
    status = Column(String(30), nullable=False, default="available", index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
