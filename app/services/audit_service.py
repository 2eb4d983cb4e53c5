"""Approval audit trail."""

import logging
from typing import Optional, Dict, Any
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def log_approval_action(
    db: AsyncSession,
    organization_id: str,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: Optional[UUID] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Add an audit entry to the session.

    Args:
        db: Database session (the caller commits, so the entry lands in the
            same transaction as the change it describes)
        organization_id: Tenant the change belongs to
        actor: Who acted ("telegram:@agent", "auto_approval", an API user id)
        action: Action type (e.g. "approve", "reject", "request_changes", "level_approve")
        entity_type: What was acted on ("approval_request", "decision", "crm_action")
        entity_id: Its id
        details: Additional JSON details about the action
    """
    audit_entry = AuditLog(
        organization_id=organization_id,
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
    )
    db.add(audit_entry)
    await db.flush()

    logger.info("Audit: actor=%s action=%s %s=%s", actor, action, entity_type, entity_id)
    return audit_entry
