"""Async database engine, session factory and declarative base.

Provides:
- engine: AsyncEngine built from settings.DATABASE_URL
- async_session: session factory used by background loops and startup code
- get_db(): FastAPI dependency yielding a session per request
- init_db(): create all tables; there are no migrations
"""
import logging
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": False}
    return {"echo": False, "pool_pre_ping": True}


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
async_session_maker = async_session


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def init_db(db_engine=None) -> None:
    """Create tables for every registered model."""
    from app.models import (  # noqa: F401  (registers every table on Base.metadata)
        appointment, approval, audit_log, chat_link, client, communication,
        crm_action, decision, lead, note, notification, property, task,
    )

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def dispose_engine() -> None:
    """Dispose the engine connection pool. Call once on application shutdown."""
    await engine.dispose()
