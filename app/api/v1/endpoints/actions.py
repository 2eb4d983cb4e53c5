"""CRM action ledger endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.database import get_db
from app.core.deps import get_context, http_error
from app.core.exceptions import VoiceCRMError
from app.models.crm_action import CRMAction, CRMActionStatus
from app.schemas.crm_action import CRMActionOut, ExecutionResult

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=list[CRMActionOut])
async def list_actions(
    status: Optional[CRMActionStatus] = None,
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(CRMAction)
    if status:
        query = query.where(CRMAction.status == status.value)
    result = await db.execute(query.order_by(CRMAction.created_at.desc()).limit(limit).offset(offset))
    return result.scalars().all()


@router.post("/{action_id}/reverse", response_model=ExecutionResult)
async def reverse_action(
    action_id: UUID,
    actor: str = "api",
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Undo a completed action (delete what it created, restore what it changed)."""
    try:
        return await context.executor.reverse_action(db, action_id, actor=actor)
    except VoiceCRMError as e:
        raise http_error(e)
