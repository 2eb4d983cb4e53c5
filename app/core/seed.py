"""Seed default approval policy on app startup."""

import logging
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.database import async_session
from app.models.approval import ApprovalWorkflow
from app.models.decision import AutoApprovalRule, DecisionType

logger = logging.getLogger(__name__)

DEFAULT_RULES = [
    {
        "rule_name": "auto-approve note additions",
        "decision_type": DecisionType.ADD_NOTE.value,
        "conditions": {"min_confidence": 0.9},
        "priority": 0,
    },
]


async def seed_defaults(session_factory: async_sessionmaker = async_session, organization_id: str = "default") -> None:
    """Create the default auto-approval rule and approval workflow if none exist."""
    async with session_factory() as db:
        try:
            rule_count = (await db.execute(select(func.count(AutoApprovalRule.id)))).scalar() or 0
            if not rule_count:
                for rule in DEFAULT_RULES:
                    db.add(AutoApprovalRule(organization_id=None, is_active=True, **rule))
                logger.info("Seeded %d default auto-approval rules", len(DEFAULT_RULES))

            workflow_count = (await db.execute(select(func.count(ApprovalWorkflow.id)))).scalar() or 0
            if not workflow_count:
                db.add(ApprovalWorkflow(
                    organization_id=organization_id,
                    name="Default single approver",
                    entity_type="all",
                    action_type="all",
                    approval_levels=1,
                    auto_approve_enabled=False,
                    is_default=True,
                    is_active=True,
                ))
                logger.info("Seeded default approval workflow for %s", organization_id)

            await db.commit()
        except Exception as e:
            logger.error("Failed to seed defaults: %s", e)
            await db.rollback()
