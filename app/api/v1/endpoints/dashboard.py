"""Pipeline dashboard: JSON stats plus a WebSocket feed of pipeline events."""

import logging
from typing import Any, Set

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.approval import ApprovalRequest, ApprovalStatus
from app.models.communication import Communication
from app.models.crm_action import CRMAction
from app.models.decision import Decision

router = APIRouter()
logger = logging.getLogger(__name__)

_connections: Set[WebSocket] = set()


async def broadcast(message: dict):
    """Send a JSON message to all connected dashboard clients."""
    dead = set()
    for ws in _connections:
        try:
            await ws.send_json(message)
        except Exception:
            dead.add(ws)
    _connections.difference_update(dead)


async def forward_event(event_type: str, payload: dict[str, Any]) -> None:
    """EventBus wildcard handler: relay every pipeline event to the dashboard."""
    if _connections:
        await broadcast({"event": event_type, **payload})


async def _counts(db: AsyncSession, column) -> dict[str, int]:
    result = await db.execute(select(column, func.count()).group_by(column))
    return {str(status): count for status, count in result.all()}


@router.get("/stats")
async def stats(db: AsyncSession = Depends(get_db)):
    """Counts by status for each stage of the pipeline."""
    pending = await db.execute(
        select(func.count(ApprovalRequest.id)).where(ApprovalRequest.status == ApprovalStatus.PENDING)
    )
    return {
        "communications": await _counts(db, Communication.status),
        "decisions": await _counts(db, Decision.status),
        "actions": await _counts(db, CRMAction.status),
        "pending_approvals": pending.scalar() or 0,
        "live_clients": len(_connections),
    }


@router.websocket("/ws")
async def dashboard_ws(websocket: WebSocket):
    await websocket.accept()
    _connections.add(websocket)
    logger.info("Dashboard client connected (%d total)", len(_connections))
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        _connections.discard(websocket)
        logger.info("Dashboard client disconnected (%d remaining)", len(_connections))
