"""Shared test fixtures for the voice CRM pipeline tests.

Uses an in-memory SQLite async engine per test so tests run without PostgreSQL.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PIPELINE_WORKERS_ENABLED", "false")

from datetime import datetime
from typing import Optional
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.context import build_context
from app.core.database import get_db, init_db
from app.core.deps import get_context
from app.core.events import EventBus
from app.main import app
from app.models.client import Client
from app.models.communication import Communication, CommunicationChannel, ProcessingStatus
from app.models.decision import Decision, DecisionStatus, DecisionType, DECISION_ROUTING
from app.schemas.communication import TranscriptionResult
from app.schemas.decision import normalize_parameters
from app.services.audio_storage import AudioStorage
from app.services.llm import LLMClient
from app.services.telegram import TelegramClient
from app.voice.stt import Transcriber

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TZ = ZoneInfo(settings.BUSINESS_TIMEZONE)
# Wednesday morning, business time
FIXED_NOW = datetime(2026, 3, 4, 9, 30, tzinfo=TZ)


class FakeSTTProvider:
    """Stands in for a recogniser; returns canned text or raises."""

    def __init__(self, name: str = "local", text: str = "", error: Optional[Exception] = None):
        self.name = name
        self.text = text
        self.error = error
        self.calls = 0

    def is_available(self) -> bool:
        return True

    async def transcribe(self, audio_bytes: bytes, language: Optional[str]) -> TranscriptionResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return TranscriptionResult(text=self.text, language="en", confidence=0.93, provider=self.name)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL, poolclass=StaticPool, connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """Direct DB session for test setup/assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def telegram():
    """Bot API client with every network call mocked."""
    mock = AsyncMock(spec=TelegramClient)
    mock.is_configured = True
    mock.send_message.return_value = {"message_id": 500}
    mock.download_file.return_value = b"OggS" + b"\x00" * 64
    return mock


@pytest.fixture
def stt():
    return FakeSTTProvider(text="Meeting with Rahul tomorrow at 4pm to see the Sunset Villa.")


@pytest.fixture
def context(session_factory, events, telegram, stt, tmp_path):
    ctx = build_context(
        session_factory,
        settings=settings,
        llm=LLMClient(api_key="", azure_api_key="", azure_endpoint=""),
        telegram=telegram,
        storage=AudioStorage(connection_string="", media_dir=str(tmp_path / "media")),
        transcriber=Transcriber(providers=[stt], timeout=5),
        events=events,
    )
    ctx.engine._clock = lambda: FIXED_NOW
    return ctx


@pytest_asyncio.fixture
async def client(context, session_factory):
    """Async HTTP test client wired to the per-test database and context."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_context] = lambda: context
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# --- factories -------------------------------------------------------------

async def make_client(db, name: str = "Priya Sharma", **fields) -> Client:
    client = Client(organization_id="default", name=name, **fields)
    db.add(client)
    await db.commit()
    return client


async def make_communication(db, chat_id: Optional[str] = "4242", **fields) -> Communication:
    values = dict(
        organization_id="default",
        channel=CommunicationChannel.TELEGRAM if chat_id else CommunicationChannel.UPLOAD,
        channel_id=chat_id,
        source_message_id=fields.pop("source_message_id", None),
        channel_metadata={"message_id": 77},
        transcript="Client wants a viewing tomorrow.",
        summary="Viewing requested",
        status=ProcessingStatus.COMPLETED,
    )
    values.update(fields)
    communication = Communication(**values)
    db.add(communication)
    await db.commit()
    return communication


async def make_decision(
    db,
    communication: Communication,
    decision_type: DecisionType = DecisionType.ADD_NOTE,
    parameters: Optional[dict] = None,
    status: DecisionStatus = DecisionStatus.PENDING,
    confidence: float = 0.8,
    **fields,
) -> Decision:
    parameters = parameters if parameters is not None else {"note_content": "Called the client"}
    action_type, _, _ = DECISION_ROUTING[decision_type]
    values = dict(
        communication_id=communication.id,
        organization_id=communication.organization_id,
        decision_type=decision_type.value,
        action_type=action_type.value,
        parameters=normalize_parameters(decision_type, parameters),
        reasoning="test",
        confidence_score=confidence,
        priority="medium",
        requires_approval=True,
        auto_approve_eligible=False,
        status=status,
    )
    values.update(fields)
    decision = Decision(**values)
    db.add(decision)
    await db.commit()
    return decision
