"""Tests for decision analysis (rules + LLM parsing) and auto-approval."""

import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.core.exceptions import LLMResponseError
from app.models.decision import AutoApprovalRule, Decision, DecisionStatus, DecisionType
from app.schemas.decision import DecisionContext, DecisionSuggestion
from app.services.decision_engine import AUTO_APPROVAL_ACTOR, DecisionEngine
from app.services.llm import LLMClient
from tests.conftest import FIXED_NOW, make_communication


def _engine(llm=None):
    llm = llm or LLMClient(api_key="", azure_api_key="", azure_endpoint="")
    return DecisionEngine(llm=llm, clock=lambda: FIXED_NOW)


def _types(suggestions):
    return [s.decision_type for s in suggestions]


@pytest.mark.asyncio
async def test_rules_schedule_viewing_from_transcript():
    context = DecisionContext(
        transcript="Meeting with Rahul tomorrow at 4pm to see the Sunset Villa.",
        summary="Rahul wants to see Sunset Villa",
    )

    suggestions = await _engine().analyze(context)

    assert _types(suggestions) == [DecisionType.SCHEDULE_APPOINTMENT, DecisionType.ADD_NOTE]
    viewing = suggestions[0]
    assert viewing.confidence_score == 0.8
    assert viewing.requires_approval is True
    assert viewing.parameters["title"] == "Property viewing: Sunset Villa"
    # 16:00 IST the next day, stored as naive UTC
    assert viewing.parameters["start_time"] == "2026-03-05T10:30:00"
    assert viewing.parameters["end_time"] == "2026-03-05T11:30:00"


@pytest.mark.asyncio
async def test_rules_location_entity_names_the_viewing():
    context = DecisionContext(
        transcript="Show the flat on Friday",
        entities={"locations": ["Palm Grove"], "dates": ["friday"]},
    )

    suggestions = await _engine().analyze(context)

    viewing = suggestions[0]
    assert viewing.parameters["title"] == "Property viewing: Palm Grove"
    assert viewing.parameters["location"] == "Palm Grove"
    assert viewing.parameters["start_time"] == "2026-03-06T04:30:00"


@pytest.mark.asyncio
async def test_rules_budget_update_needs_known_client():
    client_id = uuid.uuid4()
    transcript = "Priya now wants something between 1 crore and 1.5 crore"

    with_client = await _engine().analyze(DecisionContext(transcript=transcript, client_id=client_id))
    without_client = await _engine().analyze(DecisionContext(transcript=transcript))

    budget = next(s for s in with_client if s.decision_type == DecisionType.UPDATE_BUDGET)
    assert budget.parameters["budget_min"] == 10_000_000.0
    assert budget.parameters["budget_max"] == 15_000_000.0
    assert budget.parameters["client_id"] == str(client_id)
    assert DecisionType.UPDATE_BUDGET not in _types(without_client)


@pytest.mark.asyncio
async def test_rules_new_lead_with_phone():
    context = DecisionContext(
        transcript="New lead, Arjun is looking for a 2 BHK, call 98765 43210, budget 50 to 80 lakh",
        entities={"people": ["Arjun"]},
    )

    suggestions = await _engine().analyze(context)

    lead = next(s for s in suggestions if s.decision_type == DecisionType.CREATE_LEAD)
    assert lead.confidence_score == 0.65
    assert lead.parameters["name"] == "Arjun"
    assert lead.parameters["phone"] == "9876543210"
    assert lead.parameters["interested_in"] == "apartment"
    assert lead.parameters["budget_min"] == 5_000_000.0


@pytest.mark.asyncio
async def test_rules_follow_up_task_due_by_urgency():
    context = DecisionContext(transcript="Please follow up with the Mehtas", urgency="high")

    suggestions = await _engine().analyze(context)

    task = suggestions[0]
    assert task.decision_type == DecisionType.CREATE_TASK
    assert task.parameters["priority"] == "high"
    # one day after FIXED_NOW, in UTC
    assert task.parameters["due_date"] == "2026-03-05T04:00:00"


@pytest.mark.asyncio
async def test_every_analysis_ends_with_audit_note():
    suggestions = await _engine().analyze(DecisionContext(transcript="Nothing actionable here"))

    assert _types(suggestions) == [DecisionType.ADD_NOTE]
    note = suggestions[0]
    assert note.requires_approval is False
    assert note.auto_approve_eligible is True
    assert note.parameters["note_content"] == "Nothing actionable here"


@pytest.mark.asyncio
async def test_llm_decisions_are_validated_and_trusted_only_above_threshold():
    llm = LLMClient(api_key="sk-test")
    raw = json.dumps({"decisions": [
        {"decision_type": "teleport_client", "parameters": {}, "confidence_score": 0.99},
        {"decision_type": "create_task", "parameters": {"title": "Send brochure", "due_date": "tomorrow"},
         "confidence_score": 0.7, "requires_approval": False, "auto_approve_eligible": True},
        {"decision_type": "update_budget", "parameters": {"budget_min": "40 lakh"}, "confidence_score": 0.9},
        {"decision_type": "schedule_appointment", "parameters": {"start_time": "2026-03-06T15:00:00"},
         "confidence_score": 1.4},
    ]})

    with patch.object(llm, "complete", new=AsyncMock(return_value=f"```json\n{raw}\n```")):
        suggestions = await _engine(llm).analyze(DecisionContext(transcript="..."))

    # unknown type and budget update without a client are dropped; audit note appended
    assert _types(suggestions) == [
        DecisionType.CREATE_TASK, DecisionType.SCHEDULE_APPOINTMENT, DecisionType.ADD_NOTE,
    ]
    task, viewing, _ = suggestions
    assert task.requires_approval is True
    assert task.auto_approve_eligible is False
    assert task.parameters["due_date"] == "2026-03-05T04:30:00"
    assert viewing.confidence_score == 1.0
    assert viewing.parameters["title"] == "Property viewing"
    assert viewing.parameters["start_time"] == "2026-03-06T09:30:00"


@pytest.mark.asyncio
async def test_llm_garbage_falls_back_to_rules():
    llm = LLMClient(api_key="sk-test")
    with patch.object(llm, "complete", new=AsyncMock(return_value="I think you should call them")):
        suggestions = await _engine(llm).analyze(
            DecisionContext(transcript="Appointment with Neha on friday")
        )

    assert _types(suggestions) == [DecisionType.SCHEDULE_APPOINTMENT, DecisionType.ADD_NOTE]


def test_parse_llm_decisions_rejects_non_json():
    with pytest.raises(LLMResponseError):
        _engine().parse_llm_decisions("not json", DecisionContext())


@pytest.mark.parametrize("raw,expected", [(1.7, 1.0), (-0.3, 0.0), ("0.42", 0.42), ("high", 0.5)])
def test_confidence_is_clamped(raw, expected):
    suggestion = DecisionSuggestion(
        decision_type=DecisionType.ADD_NOTE, parameters={"note_content": "x"}, confidence_score=raw,
    )
    assert suggestion.confidence_score == expected


@pytest.mark.asyncio
async def test_create_decisions_leaves_everything_pending_without_rules(db):
    communication = await make_communication(db)
    engine = _engine()
    suggestions = await engine.analyze(DecisionContext(transcript="Visit the site tomorrow"))

    decisions = await engine.create_decisions(db, suggestions, communication)

    assert [d.status for d in decisions] == [DecisionStatus.PENDING, DecisionStatus.PENDING]
    assert all(d.short_id == d.id.hex[:8] for d in decisions)
    assert decisions[0].priority == "medium"
    assert decisions[1].priority == "high"
    assert decisions[0].expires_at > decisions[0].suggested_at


@pytest.mark.asyncio
async def test_auto_approval_rule_respects_daily_cap(db):
    db.add(AutoApprovalRule(
        rule_name="notes", decision_type="add_note",
        conditions={"min_confidence": 0.9, "max_daily_approvals": 1},
    ))
    await db.commit()
    engine = _engine()

    first = await make_communication(db, source_message_id="1")
    second = await make_communication(db, source_message_id="2")
    note = (await engine.analyze(DecisionContext(transcript="Quick update")))[0]

    [approved] = await engine.create_decisions(db, [note], first)
    [capped] = await engine.create_decisions(db, [note], second)

    assert approved.status == DecisionStatus.APPROVED
    assert approved.approved_by == AUTO_APPROVAL_ACTOR
    assert capped.status == DecisionStatus.PENDING


@pytest.mark.asyncio
async def test_auto_approval_rule_outside_time_window(db):
    db.add(AutoApprovalRule(
        rule_name="evenings only", decision_type="add_note",
        conditions={"time_window": {"start": "18:00", "end": "22:00"}},
    ))
    await db.commit()
    engine = _engine()
    communication = await make_communication(db)
    note = (await engine.analyze(DecisionContext(transcript="Quick update")))[0]

    [decision] = await engine.create_decisions(db, [note], communication)

    assert decision.status == DecisionStatus.PENDING


@pytest.mark.asyncio
async def test_rule_never_approves_ineligible_suggestion(db):
    db.add(AutoApprovalRule(rule_name="tasks", decision_type="create_task", conditions={"min_confidence": 0.1}))
    await db.commit()
    engine = _engine()
    communication = await make_communication(db)
    suggestions = await engine.analyze(DecisionContext(transcript="Remind me to call Anil"))

    decisions = await engine.create_decisions(db, suggestions, communication)

    task = next(d for d in decisions if d.decision_type == "create_task")
    assert task.status == DecisionStatus.PENDING
    stored = (await db.execute(select(Decision).where(Decision.id == task.id))).scalar_one()
    assert stored.approved_by is None
