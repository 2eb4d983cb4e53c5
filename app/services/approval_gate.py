"""Approval gate: decides whether a decision needs a human and records the
human's answer.

check_permission fails closed: any error while evaluating workflows means
"approval required, not auto-approvable". Resolving a request is a
conditional update on status = pending, so two approvers racing on the same
request cannot both win.
"""

import logging
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.core.events import APPROVAL_REQUEST_CREATED, APPROVAL_REQUEST_RESOLVED, EventBus
from app.core.exceptions import ApprovalAlreadyResolved, ApprovalExpired, ApprovalNotFound
from app.models.approval import ApprovalRequest, ApprovalStatus, ApprovalWorkflow
from app.models.decision import Decision, DecisionStatus, DecisionType, DECISION_ROUTING
from app.schemas.approval import ApprovalRequestCreate, PermissionResult
from app.services.audit_service import log_approval_action

logger = logging.getLogger(__name__)

WORKFLOW_AUTO_APPROVAL_ACTOR = "workflow_auto_approval"
PIPELINE_REQUESTER = "voice_pipeline"


def _conditions_match(conditions: dict[str, Any], context: dict[str, Any]) -> bool:
    """Every condition key must hold for the context.

    Values may be a literal (equality), a list (membership) or a
    {"min": x, "max": y} range.
    """
    for key, expected in (conditions or {}).items():
        actual = context.get(key)
        if isinstance(expected, dict):
            if actual is None:
                return False
            if "min" in expected and actual < expected["min"]:
                return False
            if "max" in expected and actual > expected["max"]:
                return False
        elif isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _decision_amount(decision: Decision) -> Optional[float]:
    params = decision.parameters or {}
    amounts = [params.get(k) for k in ("budget_max", "budget_min", "price")]
    updates = params.get("updates") or {}
    amounts += [updates.get(k) for k in ("budget_max", "budget_min", "price")]
    numbers = [a for a in amounts if isinstance(a, (int, float))]
    return max(numbers) if numbers else None


class ApprovalGate:
    def __init__(self, events: EventBus, executor=None, approval_ttl_hours: Optional[int] = None):
        self.events = events
        self.executor = executor
        self.approval_ttl = timedelta(hours=approval_ttl_hours or settings.APPROVAL_TTL_HOURS)

    # ------------------------------------------------------------------
    # Permission
    # ------------------------------------------------------------------

    async def check_permission(
        self,
        db: AsyncSession,
        organization_id: str,
        entity_type: str,
        action_type: str,
        context: Optional[dict[str, Any]] = None,
    ) -> PermissionResult:
        """Decide whether a change needs a human, using the matching workflow.

        Args:
            db: Database session.
            organization_id: Tenant whose workflows apply.
            entity_type: Entity the change touches ("lead", "appointment", ...).
            action_type: Decision type being checked.
            context: Facts the workflow conditions look at, such as ``confidence``.

        Returns:
            PermissionResult. Any lookup error fails closed, so approval is required.
        """
        context = context or {}
        try:
            workflow = await self._find_workflow(db, organization_id, entity_type, action_type, context)
            if workflow is None:
                return PermissionResult(reason="No approval workflow configured; approval required")

            auto = self._workflow_auto_approves(workflow, context)
            return PermissionResult(
                requires_approval=not auto,
                auto_approve_eligible=auto,
                workflow_id=workflow.id,
                max_level=max(1, workflow.approval_levels or 1),
                reason=f"Workflow '{workflow.name}'" + (" auto-approves" if auto else " requires approval"),
            )
        except Exception as e:
            logger.error("Permission check failed for %s/%s, failing closed: %s", entity_type, action_type, e)
            return PermissionResult(reason=f"Permission check failed: {e}")

    async def _find_workflow(
        self,
        db: AsyncSession,
        organization_id: str,
        entity_type: str,
        action_type: str,
        context: dict[str, Any],
    ) -> Optional[ApprovalWorkflow]:
        result = await db.execute(
            select(ApprovalWorkflow)
            .where(
                and_(
                    ApprovalWorkflow.organization_id == organization_id,
                    ApprovalWorkflow.is_active.is_(True),
                    ApprovalWorkflow.entity_type.in_([entity_type, "all"]),
                    ApprovalWorkflow.action_type.in_([action_type, "all"]),
                )
            )
            .order_by(ApprovalWorkflow.is_default, ApprovalWorkflow.created_at)
        )
        workflows = result.scalars().all()

        for workflow in workflows:
            if not workflow.is_default and _conditions_match(workflow.conditions, context):
                return workflow

        if not any(w.is_default for w in workflows):
            result = await db.execute(
                select(ApprovalWorkflow).where(
                    and_(
                        ApprovalWorkflow.organization_id == organization_id,
                        ApprovalWorkflow.is_active.is_(True),
                        ApprovalWorkflow.is_default.is_(True),
                    )
                )
            )
            workflows = result.scalars().all()

        for workflow in workflows:
            if workflow.is_default:
                return workflow
        return None

    def _workflow_auto_approves(self, workflow: ApprovalWorkflow, context: dict[str, Any]) -> bool:
        if not workflow.auto_approve_enabled:
            return False
        conditions = workflow.auto_approve_conditions or {}
        threshold = conditions.get("confidence_threshold")
        if threshold is not None and float(context.get("confidence_score", 0.0)) < float(threshold):
            return False
        max_amount = conditions.get("max_amount")
        amount = context.get("amount")
        if max_amount is not None and amount is not None and amount > max_amount:
            return False
        return True

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route_decision(
        self, db: AsyncSession, decision: Decision, notify_channel: bool = True,
    ) -> Optional[ApprovalRequest]:
        """Send a freshly persisted decision on its way.

        Approved decisions go straight to the executor. Pending ones are
        approved by workflow policy when it allows, otherwise they get an
        approval request (returned).
        """
        if decision.status == DecisionStatus.APPROVED:
            await self._execute(db, decision)
            return None
        if decision.status != DecisionStatus.PENDING:
            return None

        _, entity_type, _ = DECISION_ROUTING[DecisionType(decision.decision_type)]
        context = {
            "decision_type": decision.decision_type,
            "confidence_score": decision.confidence_score,
            "priority": decision.priority,
            "amount": _decision_amount(decision),
        }
        permission = await self.check_permission(
            db, decision.organization_id, entity_type, decision.action_type, context,
        )

        if permission.auto_approve_eligible and decision.auto_approve_eligible:
            now = utcnow()
            decision.status = DecisionStatus.APPROVED
            decision.approved_by = WORKFLOW_AUTO_APPROVAL_ACTOR
            decision.approved_at = now
            await log_approval_action(
                db, decision.organization_id, WORKFLOW_AUTO_APPROVAL_ACTOR, "auto_approve", "decision",
                decision.id, {"workflow_id": str(permission.workflow_id), "reason": permission.reason},
            )
            await db.commit()
            await self._execute(db, decision)
            return None

        return await self.create_approval_request(
            db,
            ApprovalRequestCreate(
                organization_id=decision.organization_id,
                entity_type=entity_type,
                action_type=decision.action_type,
                decision_id=decision.id,
                entity_id=self._target_entity(decision),
                workflow_id=permission.workflow_id,
                max_level=permission.max_level,
                priority=decision.priority,
                change_summary=decision.reasoning,
                proposed_changes=decision.parameters or {},
                metadata={"notify_channel": notify_channel, "decision_type": decision.decision_type},
            ),
            requester_id=PIPELINE_REQUESTER,
        )

    @staticmethod
    def _target_entity(decision: Decision) -> Optional[UUID]:
        params = decision.parameters or {}
        for key in ("client_id", "property_id", "entity_id"):
            if params.get(key):
                try:
                    return UUID(str(params[key]))
                except ValueError:
                    return None
        return None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_approval_request(
        self, db: AsyncSession, data: ApprovalRequestCreate, requester_id: str,
    ) -> ApprovalRequest:
        """Open a request for a decision and announce it on the event bus.

        Args:
            db: Database session; committed before the event is published.
            data: What is being approved and by how many levels.
            requester_id: Who asked ("system" for extracted suggestions).

        Returns:
            The new request, or the existing one when the decision already has one.
        """
        existing = await self.request_for_decision(db, data.decision_id)
        if existing is not None:
            return existing

        now = utcnow()
        request = ApprovalRequest(
            organization_id=data.organization_id,
            entity_type=data.entity_type,
            entity_id=data.entity_id,
            action_type=data.action_type,
            decision_id=data.decision_id,
            workflow_id=data.workflow_id,
            requested_by=requester_id,
            requested_at=now,
            current_level=1,
            max_level=max(1, data.max_level),
            status=ApprovalStatus.PENDING,
            priority=data.priority,
            change_summary=data.change_summary,
            proposed_changes=dict(data.proposed_changes),
            request_metadata=dict(data.metadata),
            approvals=[],
            expires_at=now + self.approval_ttl,
        )
        db.add(request)
        await db.commit()
        logger.info("Approval request %s opened for decision %s", request.id, data.decision_id)

        await self.events.publish(APPROVAL_REQUEST_CREATED, {
            "approval_request_id": str(request.id),
            "decision_id": str(request.decision_id),
            "organization_id": request.organization_id,
            "notify_channel": bool(data.metadata.get("notify_channel", True)),
        })
        return request

    async def get_request(self, db: AsyncSession, request_id: UUID) -> ApprovalRequest:
        result = await db.execute(select(ApprovalRequest).where(ApprovalRequest.id == request_id))
        request = result.scalar_one_or_none()
        if request is None:
            raise ApprovalNotFound(f"Approval request {request_id} not found")
        return request

    async def request_for_decision(self, db: AsyncSession, decision_id: UUID) -> Optional[ApprovalRequest]:
        result = await db.execute(select(ApprovalRequest).where(ApprovalRequest.decision_id == decision_id))
        return result.scalar_one_or_none()

    async def list_pending(self, db: AsyncSession, organization_id: Optional[str] = None, limit: int = 50):
        query = select(ApprovalRequest).where(ApprovalRequest.status == ApprovalStatus.PENDING)
        if organization_id:
            query = query.where(ApprovalRequest.organization_id == organization_id)
        result = await db.execute(query.order_by(ApprovalRequest.requested_at).limit(limit))
        return result.scalars().all()

    async def _load_decision(self, db: AsyncSession, decision_id: UUID) -> Decision:
        result = await db.execute(select(Decision).where(Decision.id == decision_id))
        decision = result.scalar_one_or_none()
        if decision is None:
            raise ApprovalNotFound(f"Decision {decision_id} not found")
        return decision

    async def _close(
        self,
        db: AsyncSession,
        request: ApprovalRequest,
        status: ApprovalStatus,
        actor: str,
        notes: Optional[str],
    ) -> None:
        """pending -> final status, or ApprovalAlreadyResolved if someone got there first."""
        now = utcnow()
        result = await db.execute(
            update(ApprovalRequest)
            .where(and_(ApprovalRequest.id == request.id, ApprovalRequest.status == ApprovalStatus.PENDING))
            .values(status=status, resolved_by=actor, resolved_at=now, resolution_notes=notes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise ApprovalAlreadyResolved(f"Approval request {request.id} is already resolved")
        await db.refresh(request)

    def _check_pending(self, request: ApprovalRequest) -> None:
        if request.status != ApprovalStatus.PENDING:
            raise ApprovalAlreadyResolved(
                f"Approval request {request.id} is already {request.status}"
            )

    async def approve(
        self,
        db: AsyncSession,
        request_id: UUID,
        approver_id: str,
        notes: Optional[str] = None,
        via: str = "api",
    ) -> ApprovalRequest:
        """Sign the current level; the last level approves the decision and
        hands it to the executor."""
        request = await self.get_request(db, request_id)
        self._check_pending(request)
        if request.expires_at and utcnow() > request.expires_at:
            raise ApprovalExpired(f"Approval request {request.id} expired at {request.expires_at}")

        signature = {
            "level": request.current_level,
            "approver": approver_id,
            "at": utcnow().isoformat(),
            "notes": notes,
        }

        if request.current_level < request.max_level:
            result = await db.execute(
                update(ApprovalRequest)
                .where(and_(
                    ApprovalRequest.id == request.id,
                    ApprovalRequest.status == ApprovalStatus.PENDING,
                    ApprovalRequest.current_level == request.current_level,
                ))
                .values(
                    current_level=request.current_level + 1,
                    approvals=list(request.approvals or []) + [signature],
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise ApprovalAlreadyResolved(f"Approval request {request.id} changed concurrently")
            await log_approval_action(
                db, request.organization_id, approver_id, "level_approve", "approval_request",
                request.id, {"level": signature["level"], "notes": notes, "via": via},
            )
            await db.commit()
            await db.refresh(request)
            logger.info(
                "Approval request %s level %d/%d signed by %s",
                request.id, signature["level"], request.max_level, approver_id,
            )
            return request

        await self._close(db, request, ApprovalStatus.APPROVED, approver_id, notes)
        request.approvals = list(request.approvals or []) + [signature]

        decision = await self._load_decision(db, request.decision_id)
        if decision.status == DecisionStatus.PENDING:
            decision.status = DecisionStatus.APPROVED
            decision.approved_by = approver_id
            decision.approved_at = utcnow()
        await log_approval_action(
            db, request.organization_id, approver_id, "approve", "approval_request",
            request.id, {"decision_id": str(decision.id), "notes": notes, "via": via},
        )
        await db.commit()
        logger.info("Decision %s approved by %s via %s", decision.short_id, approver_id, via)

        await self.events.publish(APPROVAL_REQUEST_RESOLVED, self._resolved_payload(request, decision, via))

        result = await self._execute(db, decision)
        if result is not None:
            request.execution_result = result.model_dump(mode="json")
            await db.commit()
        return request

    async def reject(
        self,
        db: AsyncSession,
        request_id: UUID,
        approver_id: str,
        reason: Optional[str] = None,
        via: str = "api",
    ) -> ApprovalRequest:
        return await self._decline(db, request_id, approver_id, reason, via, ApprovalStatus.REJECTED)

    async def request_changes(
        self,
        db: AsyncSession,
        request_id: UUID,
        approver_id: str,
        notes: Optional[str] = None,
        via: str = "api",
    ) -> ApprovalRequest:
        return await self._decline(db, request_id, approver_id, notes, via, ApprovalStatus.CHANGES_REQUESTED)

    async def _decline(
        self,
        db: AsyncSession,
        request_id: UUID,
        approver_id: str,
        notes: Optional[str],
        via: str,
        status: ApprovalStatus,
    ) -> ApprovalRequest:
        request = await self.get_request(db, request_id)
        self._check_pending(request)
        await self._close(db, request, status, approver_id, notes)

        decision = await self._load_decision(db, request.decision_id)
        if decision.status == DecisionStatus.PENDING:
            decision.status = DecisionStatus.REJECTED
            decision.rejected_by = approver_id
            if status == ApprovalStatus.CHANGES_REQUESTED:
                decision.rejected_reason = f"changes requested: {notes}" if notes else "changes requested"
            else:
                decision.rejected_reason = notes
        action = "reject" if status == ApprovalStatus.REJECTED else "request_changes"
        await log_approval_action(
            db, request.organization_id, approver_id, action, "approval_request",
            request.id, {"decision_id": str(decision.id), "notes": notes, "via": via},
        )
        await db.commit()
        logger.info("Decision %s %s by %s via %s", decision.short_id, status.value, approver_id, via)

        await self.events.publish(APPROVAL_REQUEST_RESOLVED, self._resolved_payload(request, decision, via))
        return request

    # ------------------------------------------------------------------
    # Decision-level convenience (chat buttons, REST)
    # ------------------------------------------------------------------

    async def _ensure_request(self, db: AsyncSession, decision: Decision, actor: str) -> ApprovalRequest:
        request = await self.request_for_decision(db, decision.id)
        if request is not None:
            return request
        _, entity_type, _ = DECISION_ROUTING[DecisionType(decision.decision_type)]
        return await self.create_approval_request(
            db,
            ApprovalRequestCreate(
                organization_id=decision.organization_id,
                entity_type=entity_type,
                action_type=decision.action_type,
                decision_id=decision.id,
                entity_id=self._target_entity(decision),
                priority=decision.priority,
                change_summary=decision.reasoning,
                proposed_changes=decision.parameters or {},
                metadata={"notify_channel": False, "decision_type": decision.decision_type},
            ),
            requester_id=actor,
        )

    async def approve_decision(
        self, db: AsyncSession, decision_id: UUID, actor: str, notes: Optional[str] = None, via: str = "api",
    ) -> ApprovalRequest:
        decision = await self._load_decision(db, decision_id)
        if decision.status != DecisionStatus.PENDING:
            raise ApprovalAlreadyResolved(f"Decision {decision.short_id} is already {decision.status}")
        request = await self._ensure_request(db, decision, actor)
        return await self.approve(db, request.id, actor, notes, via)

    async def reject_decision(
        self, db: AsyncSession, decision_id: UUID, actor: str, reason: Optional[str] = None, via: str = "api",
    ) -> ApprovalRequest:
        decision = await self._load_decision(db, decision_id)
        if decision.status != DecisionStatus.PENDING:
            raise ApprovalAlreadyResolved(f"Decision {decision.short_id} is already {decision.status}")
        request = await self._ensure_request(db, decision, actor)
        return await self.reject(db, request.id, actor, reason, via)

    async def request_decision_changes(
        self, db: AsyncSession, decision_id: UUID, actor: str, notes: Optional[str] = None, via: str = "api",
    ) -> ApprovalRequest:
        decision = await self._load_decision(db, decision_id)
        if decision.status != DecisionStatus.PENDING:
            raise ApprovalAlreadyResolved(f"Decision {decision.short_id} is already {decision.status}")
        request = await self._ensure_request(db, decision, actor)
        return await self.request_changes(db, request.id, actor, notes, via)

    # ------------------------------------------------------------------

    async def _execute(self, db: AsyncSession, decision: Decision):
        if self.executor is None:
            logger.warning("No executor wired; decision %s stays approved for the sweep", decision.short_id)
            return None
        return await self.executor.execute_decision(db, decision)

    @staticmethod
    def _resolved_payload(request: ApprovalRequest, decision: Decision, via: str) -> dict[str, Any]:
        return {
            "approval_request_id": str(request.id),
            "decision_id": str(decision.id),
            "communication_id": str(decision.communication_id),
            "organization_id": request.organization_id,
            "status": str(getattr(request.status, "value", request.status)),
            "resolved_by": request.resolved_by,
            "via": via,
        }
