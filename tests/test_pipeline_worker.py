"""End-to-end tests for the voice processing worker."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from app.core.events import COMMUNICATION_STATUS
from app.models.approval import ApprovalRequest
from app.models.communication import Communication, ProcessingJob, ProcessingStatus
from app.models.decision import AutoApprovalRule, Decision, DecisionStatus
from app.models.note import Note
from app.schemas.insights import InsightResult
from tests.conftest import make_communication
from tests.test_channel_bridge import voice_update

INSIGHTS = InsightResult(
    summary="Rahul wants to see Sunset Villa tomorrow at 4pm",
    key_points=["Viewing requested"],
    action_items=[],
    sentiment="positive",
    entities={"people": ["Rahul"]},
    subject="Sunset Villa viewing",
    category="viewing",
    urgency="medium",
)


@pytest.fixture
def extractor(context):
    mock = AsyncMock(return_value=INSIGHTS)
    with patch.object(context.extractor, "extract", new=mock):
        yield mock


@pytest.fixture
def statuses(events):
    seen = []

    async def capture(event_type, payload):
        seen.append(payload["status"])

    events.subscribe(COMMUNICATION_STATUS, capture)
    return seen


async def _ingest(context, db):
    await context.bridge.process_update(voice_update())
    return (await db.execute(select(ProcessingJob))).scalar_one()


@pytest.mark.asyncio
async def test_voice_note_to_suggestions(db, context, telegram, extractor, statuses, tmp_path):
    job = await _ingest(context, db)

    assert await context.pipeline_worker.run_once() == 1

    communication = (await db.execute(select(Communication))).scalar_one()
    assert communication.status == ProcessingStatus.COMPLETED
    assert communication.transcript.startswith("Meeting with Rahul")
    assert communication.transcription_provider == "local"
    assert communication.summary == INSIGHTS.summary
    assert communication.entities["people"] == ["Rahul"]
    assert (tmp_path / "media" / communication.audio_ref).exists()

    decisions = (await db.execute(select(Decision).order_by(Decision.suggested_at))).scalars().all()
    assert sorted(d.decision_type for d in decisions) == ["add_note", "schedule_appointment"]
    assert all(d.status == DecisionStatus.PENDING for d in decisions)
    requests = (await db.execute(select(func.count()).select_from(ApprovalRequest))).scalar()
    assert requests == 2

    await db.refresh(job)
    assert job.status == ProcessingStatus.COMPLETED
    assert job.completed_at is not None
    assert statuses == ["queued", "downloading", "transcribing", "summarizing", "completed"]

    last = telegram.send_message.await_args
    assert last.args[0] == "4242"
    assert last.kwargs["reply_to_message_id"] == 10
    assert len(last.kwargs["reply_markup"]["inline_keyboard"]) == 3
    extractor.assert_awaited_once()


@pytest.mark.asyncio
async def test_auto_approved_note_is_executed_during_routing(db, context, extractor):
    db.add(AutoApprovalRule(rule_name="notes", decision_type="add_note", conditions={"min_confidence": 0.9}))
    await db.commit()
    await _ingest(context, db)

    await context.pipeline_worker.run_once()

    note_decision = (await db.execute(select(Decision).where(Decision.decision_type == "add_note"))).scalar_one()
    assert note_decision.status == DecisionStatus.COMPLETED
    notes = (await db.execute(select(Note))).scalars().all()
    assert [n.content for n in notes] == [INSIGHTS.summary]


@pytest.mark.asyncio
async def test_resume_from_transcribing_skips_download(db, context, telegram, stt, extractor, statuses):
    await context.storage.save("stored.ogg", b"OggS" + b"\x00" * 16)
    communication = await make_communication(
        db, chat_id=None, transcript=None, summary=None,
        status=ProcessingStatus.TRANSCRIBING, audio_ref="stored.ogg",
    )
    job = ProcessingJob(
        communication_id=communication.id, source_type="upload", source_file_id="stored.ogg",
        status=ProcessingStatus.TRANSCRIBING,
    )
    db.add(job)
    await db.commit()

    assert await context.pipeline_worker.process_job(job.id) is True

    telegram.download_file.assert_not_awaited()
    # upload channel: no chat to answer
    telegram.send_message.assert_not_awaited()
    assert stt.calls == 1
    assert "downloading" not in statuses
    await db.refresh(communication)
    assert communication.status == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_after_insights_only_decides(db, context, stt, extractor):
    communication = await make_communication(
        db, chat_id=None, transcript="Remind me to follow up with Kavya", summary="Follow up with Kavya",
        status=ProcessingStatus.SUMMARIZING,
    )
    job = ProcessingJob(communication_id=communication.id, source_type="upload", status=ProcessingStatus.SUMMARIZING)
    db.add(job)
    await db.commit()

    await context.pipeline_worker.process_job(job.id)

    assert stt.calls == 0
    extractor.assert_not_awaited()
    types = (await db.execute(select(Decision.decision_type))).scalars().all()
    assert sorted(types) == ["add_note", "create_task"]


@pytest.mark.asyncio
async def test_failures_stop_at_retry_cap_and_tell_the_chat(db, context, telegram, stt, extractor):
    stt.error = RuntimeError("decoder crashed")
    job = await _ingest(context, db)
    worker = context.pipeline_worker

    assert await worker.run_once() == 1
    await db.refresh(job)
    assert job.status == ProcessingStatus.QUEUED
    assert job.retry_count == 1

    await worker.run_once()
    await worker.run_once()
    assert await worker.run_once() == 0

    await db.refresh(job)
    assert job.status == ProcessingStatus.FAILED
    assert job.retry_count == 3
    communication = await db.get(Communication, job.communication_id)
    await db.refresh(communication)
    assert communication.status == ProcessingStatus.FAILED
    assert "decoder crashed" in communication.error_message
    # audio is fetched from the channel once, then re-read from storage
    telegram.download_file.assert_awaited_once_with("F1")
    errors = [c for c in telegram.send_message.await_args_list if "Could not process" in c.args[1]]
    assert len(errors) == 1
    extractor.assert_not_awaited()


@pytest.mark.asyncio
async def test_upload_without_audio_fails(db, context, extractor):
    communication = await make_communication(db, chat_id=None, transcript=None, summary=None,
                                             status=ProcessingStatus.QUEUED)
    job = ProcessingJob(communication_id=communication.id, source_type="upload", max_retries=1)
    db.add(job)
    await db.commit()

    assert await context.pipeline_worker.process_job(job.id) is False

    await db.refresh(job)
    assert job.status == ProcessingStatus.FAILED
    assert "No audio available" in job.error_message
