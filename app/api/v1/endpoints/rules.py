"""Auto-approval rule management."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.decision import AutoApprovalRule
from app.schemas.decision import AutoApprovalRuleIn, AutoApprovalRuleOut

router = APIRouter()


@router.get("/", response_model=list[AutoApprovalRuleOut])
async def list_rules(organization_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    query = select(AutoApprovalRule)
    if organization_id:
        query = query.where(AutoApprovalRule.organization_id == organization_id)
    result = await db.execute(query.order_by(AutoApprovalRule.priority.desc(), AutoApprovalRule.created_at))
    return result.scalars().all()


@router.post("/", response_model=AutoApprovalRuleOut, status_code=201)
async def create_rule(body: AutoApprovalRuleIn, db: AsyncSession = Depends(get_db)):
    data = body.model_dump()
    data["decision_type"] = body.decision_type.value
    rule = AutoApprovalRule(**data)
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return rule


@router.put("/{rule_id}", response_model=AutoApprovalRuleOut)
async def update_rule(rule_id: UUID, body: AutoApprovalRuleIn, db: AsyncSession = Depends(get_db)):
    rule = await db.get(AutoApprovalRule, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Rule not found")
    for field, value in body.model_dump().items():
        setattr(rule, field, value.value if field == "decision_type" else value)
    await db.commit()
    await db.refresh(rule)
    return rule
