"""Decision review endpoints (the REST twin of the chat buttons)."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.database import get_db
from app.core.deps import get_context, http_error
from app.core.exceptions import VoiceCRMError
from app.models.decision import Decision, DecisionStatus
from app.schemas.crm_action import ExecutionResult
from app.schemas.decision import DecisionOut, DecisionResolve

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=list[DecisionOut])
async def list_decisions(
    status: Optional[DecisionStatus] = None,
    communication_id: Optional[UUID] = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(Decision)
    if status:
        query = query.where(Decision.status == status.value)
    if communication_id:
        query = query.where(Decision.communication_id == communication_id)
    result = await db.execute(query.order_by(Decision.suggested_at.desc()).limit(limit).offset(offset))
    return result.scalars().all()


async def _get_decision(db: AsyncSession, decision_id: UUID) -> Decision:
    decision = await db.get(Decision, decision_id)
    if not decision:
        raise HTTPException(status_code=404, detail="Decision not found")
    return decision


@router.get("/{decision_id}", response_model=DecisionOut)
async def get_decision(decision_id: UUID, db: AsyncSession = Depends(get_db)):
    return await _get_decision(db, decision_id)


@router.post("/{decision_id}/approve", response_model=DecisionOut)
async def approve_decision(
    decision_id: UUID,
    body: DecisionResolve,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Approve (one level of) a pending decision; the last level executes it."""
    await _get_decision(db, decision_id)
    try:
        await context.gate.approve_decision(db, decision_id, body.actor, body.notes, via="api")
    except VoiceCRMError as e:
        raise http_error(e)
    decision = await _get_decision(db, decision_id)
    await db.refresh(decision)
    return decision


@router.post("/{decision_id}/reject", response_model=DecisionOut)
async def reject_decision(
    decision_id: UUID,
    body: DecisionResolve,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    await _get_decision(db, decision_id)
    try:
        await context.gate.reject_decision(db, decision_id, body.actor, body.notes, via="api")
    except VoiceCRMError as e:
        raise http_error(e)
    decision = await _get_decision(db, decision_id)
    await db.refresh(decision)
    return decision


@router.post("/{decision_id}/execute", response_model=ExecutionResult)
async def execute_decision(
    decision_id: UUID,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Run an approved decision now instead of waiting for the sweep. Idempotent."""
    decision = await _get_decision(db, decision_id)
    if decision.status not in (DecisionStatus.APPROVED, DecisionStatus.COMPLETED):
        raise HTTPException(status_code=409, detail=f"Decision is {decision.status}, not approved")
    return await context.executor.execute_decision(db, decision)
