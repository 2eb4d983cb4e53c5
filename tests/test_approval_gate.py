"""Tests for permission checks, multi-level approval and request immutability."""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update

from app.core.database import utcnow
from app.core.events import APPROVAL_REQUEST_CREATED, APPROVAL_REQUEST_RESOLVED
from app.core.exceptions import ApprovalAlreadyResolved, ApprovalExpired, ApprovalNotFound
from app.models.approval import ApprovalRequest, ApprovalStatus, ApprovalWorkflow
from app.models.audit_log import AuditLog
from app.models.decision import DecisionStatus, DecisionType
from app.models.note import Note
from app.services.approval_gate import WORKFLOW_AUTO_APPROVAL_ACTOR
from tests.conftest import make_communication, make_decision


@pytest.fixture
def published(events):
    seen = []

    async def capture(event_type, payload):
        seen.append((event_type, payload))

    events.subscribe("*", capture)
    return seen


def _workflow(**fields):
    values = dict(organization_id="default", name="Default", entity_type="all", action_type="all",
                  is_default=True)
    values.update(fields)
    return ApprovalWorkflow(**values)


@pytest.mark.asyncio
async def test_no_workflow_requires_approval(db, context, published):
    communication = await make_communication(db)
    decision = await make_decision(db, communication, auto_approve_eligible=True, confidence=0.99)

    request = await context.gate.route_decision(db, decision)

    assert request is not None
    assert request.status == ApprovalStatus.PENDING
    assert request.max_level == 1
    assert request.requested_by == "voice_pipeline"
    assert decision.status == DecisionStatus.PENDING
    assert published[0][0] == APPROVAL_REQUEST_CREATED
    assert published[0][1]["notify_channel"] is True


@pytest.mark.asyncio
async def test_permission_check_fails_closed(db, context):
    with patch.object(context.gate, "_find_workflow", new=AsyncMock(side_effect=RuntimeError("db down"))):
        permission = await context.gate.check_permission(db, "default", "client", "client_action")

    assert permission.requires_approval is True
    assert permission.auto_approve_eligible is False
    assert permission.allowed is False
    assert "db down" in permission.reason


@pytest.mark.asyncio
async def test_workflow_auto_approval_executes_eligible_decision(db, context):
    db.add(_workflow(
        name="Trust notes", entity_type="communication", is_default=False,
        auto_approve_enabled=True, auto_approve_conditions={"confidence_threshold": 0.9},
    ))
    await db.commit()
    communication = await make_communication(db)
    decision = await make_decision(db, communication, auto_approve_eligible=True, confidence=0.95)

    request = await context.gate.route_decision(db, decision)

    assert request is None
    await db.refresh(decision)
    assert decision.status == DecisionStatus.COMPLETED
    assert decision.approved_by == WORKFLOW_AUTO_APPROVAL_ACTOR
    notes = (await db.execute(select(Note))).scalars().all()
    assert [n.content for n in notes] == ["Called the client"]


@pytest.mark.asyncio
async def test_workflow_auto_approval_needs_eligible_decision(db, context):
    db.add(_workflow(auto_approve_enabled=True))
    await db.commit()
    communication = await make_communication(db)
    decision = await make_decision(db, communication, auto_approve_eligible=False)

    request = await context.gate.route_decision(db, decision)

    assert request is not None
    assert decision.status == DecisionStatus.PENDING


@pytest.mark.asyncio
async def test_workflow_conditions_pick_specific_workflow(db, context):
    db.add(_workflow(name="Big budgets", is_default=False, conditions={"amount": {"min": 20_000_000}},
                     approval_levels=3))
    db.add(_workflow(name="Default"))
    await db.commit()

    big = await context.gate.check_permission(db, "default", "client", "client_action", {"amount": 50_000_000})
    small = await context.gate.check_permission(db, "default", "client", "client_action", {"amount": 5_000_000})

    assert big.max_level == 3
    assert small.max_level == 1


@pytest.mark.asyncio
async def test_multi_level_approval(db, context, published):
    db.add(_workflow(approval_levels=2))
    await db.commit()
    communication = await make_communication(db)
    decision = await make_decision(db, communication)
    request = await context.gate.route_decision(db, decision)

    first = await context.gate.approve(db, request.id, "manager")

    assert first.status == ApprovalStatus.PENDING
    assert first.current_level == 2
    await db.refresh(decision)
    assert decision.status == DecisionStatus.PENDING

    second = await context.gate.approve(db, request.id, "director", notes="ok")

    assert second.status == ApprovalStatus.APPROVED
    assert [a["approver"] for a in second.approvals] == ["manager", "director"]
    assert second.execution_result["success"] is True
    await db.refresh(decision)
    assert decision.status == DecisionStatus.COMPLETED
    assert decision.approved_by == "director"
    resolved = [p for e, p in published if e == APPROVAL_REQUEST_RESOLVED]
    assert resolved[0]["status"] == "approved"
    assert resolved[0]["via"] == "api"


@pytest.mark.asyncio
async def test_resolved_request_is_immutable(db, context):
    communication = await make_communication(db)
    decision = await make_decision(db, communication)
    request = await context.gate.route_decision(db, decision)
    await context.gate.reject(db, request.id, "manager", reason="wrong client")

    with pytest.raises(ApprovalAlreadyResolved):
        await context.gate.approve(db, request.id, "manager")
    with pytest.raises(ApprovalAlreadyResolved):
        await context.gate.request_changes(db, request.id, "manager")

    stored = (await db.execute(select(ApprovalRequest).where(ApprovalRequest.id == request.id))).scalar_one()
    assert stored.status == ApprovalStatus.REJECTED
    assert stored.resolution_notes == "wrong client"
    await db.refresh(decision)
    assert decision.status == DecisionStatus.REJECTED
    assert decision.rejected_reason == "wrong client"


@pytest.mark.asyncio
async def test_expired_request_cannot_be_approved(db, context):
    communication = await make_communication(db)
    decision = await make_decision(db, communication)
    request = await context.gate.route_decision(db, decision)
    await db.execute(
        update(ApprovalRequest)
        .where(ApprovalRequest.id == request.id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    await db.commit()
    await db.refresh(request)

    with pytest.raises(ApprovalExpired):
        await context.gate.approve(db, request.id, "manager")


@pytest.mark.asyncio
async def test_request_changes_rejects_decision_with_reason(db, context):
    communication = await make_communication(db)
    decision = await make_decision(db, communication)

    request = await context.gate.request_decision_changes(db, decision.id, "telegram:@agent", "wrong time")

    assert request.status == ApprovalStatus.CHANGES_REQUESTED
    await db.refresh(decision)
    assert decision.status == DecisionStatus.REJECTED
    assert decision.rejected_reason == "changes requested: wrong time"
    actions = (await db.execute(select(AuditLog.action))).scalars().all()
    assert "request_changes" in actions


@pytest.mark.asyncio
async def test_approve_decision_opens_request_on_demand(db, context):
    communication = await make_communication(db)
    decision = await make_decision(
        db, communication, DecisionType.CREATE_TASK, {"title": "Send brochure"},
    )

    request = await context.gate.approve_decision(db, decision.id, "telegram:@agent", via="telegram")

    assert request.status == ApprovalStatus.APPROVED
    assert request.requested_by == "telegram:@agent"
    await db.refresh(decision)
    assert decision.status == DecisionStatus.COMPLETED
    with pytest.raises(ApprovalAlreadyResolved):
        await context.gate.approve_decision(db, decision.id, "telegram:@agent")


@pytest.mark.asyncio
async def test_route_decision_is_idempotent(db, context, published):
    communication = await make_communication(db)
    decision = await make_decision(db, communication)

    first = await context.gate.route_decision(db, decision)
    second = await context.gate.route_decision(db, decision)

    assert first.id == second.id
    assert len([e for e, _ in published if e == APPROVAL_REQUEST_CREATED]) == 1


@pytest.mark.asyncio
async def test_unknown_request(db, context):
    with pytest.raises(ApprovalNotFound):
        await context.gate.approve(db, uuid.uuid4(), "manager")
