"""Approval request endpoints."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.context import AppContext
from app.core.database import get_db
from app.core.deps import get_context, http_error
from app.core.exceptions import VoiceCRMError
from app.schemas.approval import ApprovalAction, ApprovalRequestOut

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/pending", response_model=list[ApprovalRequestOut])
async def list_pending(
    organization_id: Optional[str] = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    return await context.gate.list_pending(db, organization_id, limit)


@router.get("/{request_id}", response_model=ApprovalRequestOut)
async def get_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        return await context.gate.get_request(db, request_id)
    except VoiceCRMError as e:
        raise http_error(e)


@router.post("/{request_id}/approve", response_model=ApprovalRequestOut)
async def approve(
    request_id: UUID,
    body: ApprovalAction,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        return await context.gate.approve(db, request_id, body.approver_id, body.notes, via="api")
    except VoiceCRMError as e:
        raise http_error(e)


@router.post("/{request_id}/reject", response_model=ApprovalRequestOut)
async def reject(
    request_id: UUID,
    body: ApprovalAction,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        return await context.gate.reject(db, request_id, body.approver_id, body.notes, via="api")
    except VoiceCRMError as e:
        raise http_error(e)


@router.post("/{request_id}/request-changes", response_model=ApprovalRequestOut)
async def request_changes(
    request_id: UUID,
    body: ApprovalAction,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        return await context.gate.request_changes(db, request_id, body.approver_id, body.notes, via="api")
    except VoiceCRMError as e:
        raise http_error(e)
