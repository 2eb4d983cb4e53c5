"""Action executor: applies approved decisions to the CRM store exactly once.

Idempotency layers, cheapest first:
1. in-memory set of decision ids already executed by this process
2. per-decision asyncio.Lock so concurrent callers in one process serialise
3. the persisted CRMAction row for the decision (completed / processing)
4. the unique constraint on crm_actions.decision_id across processes

The handler's writes and the "completed" status land in one commit, so a
crash can never leave a created entity without its completed action.
"""

import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select, update, and_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import utcnow
from app.core.events import ACTION_COMPLETED, ACTION_FAILED, EventBus
from app.core.exceptions import EntityNotFound, ExecutionError, UnsupportedAction
from app.models.appointment import Appointment
from app.models.chat_link import ChatLink
from app.models.client import Client
from app.models.crm_action import CRMAction, CRMActionStatus
from app.models.decision import Decision, DecisionStatus, DecisionType, DECISION_ROUTING
from app.models.lead import Lead, normalize_phone
from app.models.note import Note
from app.models.property import Property
from app.models.task import Task
from app.schemas.crm_action import ExecutionResult
from app.schemas.decision import parse_parameters
from app.services.audit_service import log_approval_action
from app.services.notification_service import notify_appointment_scheduled, notify_task_created

logger = logging.getLogger(__name__)

MessageSender = Callable[[str, str], Awaitable[Any]]

ENTITY_MODELS = {
    "lead": Lead,
    "client": Client,
    "appointment": Appointment,
    "task": Task,
    "property": Property,
    "communication": Note,
}

RETRYABLE_STATUSES = (CRMActionStatus.QUEUED, CRMActionStatus.FAILED)


def _json_safe(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class ActionExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        events: EventBus,
        message_sender: Optional[MessageSender] = None,
        max_retries: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.events = events
        self.message_sender = message_sender
        self.max_retries = max_retries or settings.ACTION_MAX_RETRIES
        self.batch_size = batch_size or settings.ACTION_BATCH_SIZE
        self._processed: set[UUID] = set()
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._lock_users: dict[UUID, int] = {}
        self._queue: deque[UUID] = deque()

        self._handlers = {
            DecisionType.CREATE_LEAD: self._create_lead,
            DecisionType.UPDATE_CLIENT: self._update_client,
            DecisionType.UPDATE_BUDGET: self._update_client,
            DecisionType.CHANGE_STATUS: self._update_client,
            DecisionType.ASSIGN_AGENT: self._update_client,
            DecisionType.SCHEDULE_APPOINTMENT: self._schedule_appointment,
            DecisionType.CREATE_TASK: self._create_task,
            DecisionType.UPDATE_PROPERTY: self._update_property,
            DecisionType.ADD_NOTE: self._add_note,
            DecisionType.SEND_MESSAGE: self._send_message,
        }

    @property
    def queued_action_ids(self) -> list[UUID]:
        return list(self._queue)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute_decision(self, db: AsyncSession, decision: Decision) -> ExecutionResult:
        """Run an approved decision against the CRM at most once.

        Calls for the same decision are serialised; repeats after success
        return the recorded result without touching the CRM again.

        Args:
            db: Session the decision belongs to; committed along the way.
            decision: The decision to execute. Only APPROVED ones run.

        Returns:
            ExecutionResult. Handler failures are recorded and returned, not raised.
        """
        decision_id = decision.id
        lock = self._locks.setdefault(decision_id, asyncio.Lock())
        self._lock_users[decision_id] = self._lock_users.get(decision_id, 0) + 1
        try:
            async with lock:
                return await self._execute_locked(db, decision)
        finally:
            self._lock_users[decision_id] -= 1
            if not self._lock_users[decision_id]:
                del self._lock_users[decision_id]
                del self._locks[decision_id]

    async def _execute_locked(self, db: AsyncSession, decision: Decision) -> ExecutionResult:
        decision_id = decision.id
        if decision_id in self._processed:
            return self._already_done(decision)

        await db.refresh(decision)
        if decision.status == DecisionStatus.COMPLETED:
            self._processed.add(decision_id)
            return self._already_done(decision)

        action = await self._action_for(db, decision_id)
        if action is None:
            if decision.status != DecisionStatus.APPROVED:
                return ExecutionResult(
                    success=False, message=f"Decision is not approved (status={decision.status})",
                )
            action = await self._create_action(db, decision)
            if action is None:
                # Another process inserted the row first
                action = await self._action_for(db, decision_id)

        if action.status == CRMActionStatus.COMPLETED:
            self._processed.add(decision_id)
            return self._result_from_action(action)
        if action.status == CRMActionStatus.PROCESSING:
            return ExecutionResult(success=False, message="Execution already in flight")
        if action.status == CRMActionStatus.REVERSED:
            return ExecutionResult(success=False, message="Action was reversed")
        if action.retry_count >= action.max_retries:
            return ExecutionResult(
                success=False, message=f"Action permanently failed: {action.error}",
            )
        if decision.status != DecisionStatus.APPROVED:
            return ExecutionResult(
                success=False, message=f"Decision is not approved (status={decision.status})",
            )

        return await self._run(db, decision, action)

    async def _action_for(self, db: AsyncSession, decision_id: UUID) -> Optional[CRMAction]:
        result = await db.execute(
            select(CRMAction)
            .where(CRMAction.decision_id == decision_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _create_action(self, db: AsyncSession, decision: Decision) -> Optional[CRMAction]:
        action_type, entity_type, operation = DECISION_ROUTING[DecisionType(decision.decision_type)]
        action = CRMAction(
            decision_id=decision.id,
            organization_id=decision.organization_id,
            action_type=action_type.value,
            entity_type=entity_type,
            operation=operation,
            payload=decision.parameters or {},
            status=CRMActionStatus.QUEUED,
            retry_count=0,
            max_retries=self.max_retries,
        )
        db.add(action)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("CRM action for decision %s already exists", decision.id)
            return None
        return action

    async def _run(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        decision_id, action_id = decision.id, action.id

        claimed = await db.execute(
            update(CRMAction)
            .where(and_(CRMAction.id == action_id, CRMAction.status.in_(RETRYABLE_STATUSES)))
            .values(status=CRMActionStatus.PROCESSING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            return ExecutionResult(success=False, message="Execution already in flight")
        await db.commit()
        await db.refresh(action)

        decision_type = DecisionType(decision.decision_type)
        try:
            handler = self._handlers.get(decision_type)
            if handler is None:
                raise UnsupportedAction(f"No handler for {decision_type.value}")
            result = await handler(db, decision, action)

            now = utcnow()
            payload = result.model_dump(mode="json")
            action.status = CRMActionStatus.COMPLETED
            action.entity_id = result.entity_id
            action.result = payload
            action.error = None
            action.executed_at = now
            decision.status = DecisionStatus.COMPLETED
            decision.executed_at = now
            decision.execution_result = payload
            decision.error_message = None
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error("Executing decision %s (%s) failed: %s", decision_id, decision_type.value, e)
            return await self._record_failure(db, decision_id, action_id, e)

        self._processed.add(decision_id)
        logger.info(
            "Decision %s executed: %s %s %s", decision.short_id, action.operation, action.entity_type, result.entity_id,
        )
        await self.events.publish(ACTION_COMPLETED, {
            "decision_id": str(decision_id),
            "action_id": str(action_id),
            "communication_id": str(decision.communication_id),
            "entity_type": action.entity_type,
            "entity_id": str(result.entity_id) if result.entity_id else None,
        })
        return result

    async def _record_failure(
        self, db: AsyncSession, decision_id: UUID, action_id: UUID, error: Exception,
    ) -> ExecutionResult:
        """Atomic increment-and-check of the retry counter."""
        await db.execute(
            update(CRMAction)
            .where(CRMAction.id == action_id)
            .values(retry_count=CRMAction.retry_count + 1, error=str(error)[:2000], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        action = await db.get(CRMAction, action_id, populate_existing=True)
        decision = await db.get(Decision, decision_id, populate_existing=True)

        if action.retry_count >= action.max_retries:
            action.status = CRMActionStatus.FAILED
            decision.status = DecisionStatus.FAILED
            decision.error_message = str(error)[:2000]
            decision.execution_result = {"success": False, "message": str(error)[:500]}
            await db.commit()
            logger.error(
                "Decision %s failed permanently after %d attempts", decision.short_id, action.retry_count,
            )
            await self.events.publish(ACTION_FAILED, {
                "decision_id": str(decision_id),
                "action_id": str(action_id),
                "communication_id": str(decision.communication_id),
                "error": str(error)[:500],
            })
            return ExecutionResult(
                success=False,
                message=f"Failed permanently after {action.retry_count} attempts: {error}",
            )

        action.status = CRMActionStatus.QUEUED
        await db.commit()
        self._queue.append(action_id)
        return ExecutionResult(
            success=False,
            message=f"Attempt {action.retry_count}/{action.max_retries} failed, requeued: {error}",
        )

    @staticmethod
    def _result_from_action(action: CRMAction) -> ExecutionResult:
        if action.result:
            data = dict(action.result)
            data["message"] = data.get("message") or "Already executed"
            return ExecutionResult.model_validate(data)
        return ExecutionResult(
            success=True, message="Already executed", entity_id=action.entity_id, entity_type=action.entity_type,
        )

    @staticmethod
    def _already_done(decision: Decision) -> ExecutionResult:
        if decision.execution_result and decision.execution_result.get("success"):
            return ExecutionResult.model_validate(decision.execution_result)
        return ExecutionResult(success=True, message="Already executed")

    # ------------------------------------------------------------------
    # Sweep (background loop)
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Process queued/retryable actions, approved decisions that never got
        an action, then the in-memory retry queue. Returns decisions handled."""
        handled: set[UUID] = set()
        async with self.session_factory() as db:
            result = await db.execute(
                select(CRMAction)
                .where(and_(
                    CRMAction.status.in_(RETRYABLE_STATUSES),
                    CRMAction.retry_count < CRMAction.max_retries,
                ))
                .order_by(CRMAction.created_at)
                .limit(self.batch_size)
            )
            decision_ids = [a.decision_id for a in result.scalars().all()]

            orphan_query = await db.execute(
                select(Decision.id)
                .where(and_(
                    Decision.status == DecisionStatus.APPROVED,
                    ~exists().where(CRMAction.decision_id == Decision.id),
                ))
                .order_by(Decision.approved_at)
                .limit(self.batch_size)
            )
            decision_ids += list(orphan_query.scalars().all())

            while self._queue:
                action_id = self._queue.popleft()
                action = await db.get(CRMAction, action_id)
                if action is not None:
                    decision_ids.append(action.decision_id)

            for decision_id in decision_ids:
                if decision_id in handled:
                    continue
                handled.add(decision_id)
                try:
                    decision = await db.get(Decision, decision_id)
                    if decision is None:
                        continue
                    await self.execute_decision(db, decision)
                except Exception as e:
                    logger.error("Sweep failed for decision %s: %s", decision_id, e)
                    await db.rollback()

        if handled:
            logger.info("Action sweep processed %d decisions", len(handled))
        return len(handled)

    async def recover_stale(self, older_than: timedelta = timedelta(minutes=5)) -> int:
        """Requeue actions left 'processing' by a crashed process."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(CRMAction)
                .where(and_(
                    CRMAction.status == CRMActionStatus.PROCESSING,
                    CRMAction.updated_at < utcnow() - older_than,
                ))
                .values(status=CRMActionStatus.QUEUED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning("Requeued %d stale processing actions", result.rowcount)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Reversal
    # ------------------------------------------------------------------

    async def reverse_action(self, db: AsyncSession, action_id: UUID, actor: str = "system") -> ExecutionResult:
        """Undo a completed action: delete what it created, restore what it changed."""
        action = await db.get(CRMAction, action_id)
        if action is None:
            raise EntityNotFound(f"CRM action {action_id} not found")
        if action.status != CRMActionStatus.COMPLETED:
            raise ExecutionError(f"Only completed actions can be reversed (status={action.status})")

        data = (action.result or {}).get("data") or {}
        model = ENTITY_MODELS.get(action.entity_type)
        entity = await db.get(model, action.entity_id) if model and action.entity_id else None

        if action.operation == "create":
            if entity is not None and not data.get("deduplicated"):
                await db.delete(entity)
        elif action.operation == "update":
            if entity is None:
                raise EntityNotFound(f"{action.entity_type} {action.entity_id} no longer exists")
            for field, value in (data.get("previous") or {}).items():
                setattr(entity, field, value)

        action.status = CRMActionStatus.REVERSED
        await log_approval_action(
            db, action.organization_id, actor, "reverse", "crm_action", action.id,
            {"entity_type": action.entity_type, "entity_id": str(action.entity_id) if action.entity_id else None},
        )
        await db.commit()
        self._processed.discard(action.decision_id)
        logger.info("Reversed CRM action %s (%s %s)", action.id, action.operation, action.entity_type)
        return ExecutionResult(
            success=True,
            message=f"Reversed {action.operation} on {action.entity_type}",
            entity_id=action.entity_id,
            entity_type=action.entity_type,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _lead_by_phone(self, db: AsyncSession, organization_id: str, phone_key: str) -> Optional[Lead]:
        result = await db.execute(
            select(Lead).where(and_(
                Lead.organization_id == organization_id,
                Lead.phone_normalized == phone_key,
            ))
        )
        return result.scalars().first()

    @staticmethod
    def _existing_lead(lead: Lead, phone: Optional[str]) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            message=f"Lead with phone {phone} already exists",
            entity_id=lead.id,
            entity_type="lead",
            data={"deduplicated": True},
        )

    async def _create_lead(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        p = parse_parameters(DecisionType.CREATE_LEAD, decision.parameters)
        phone_key = normalize_phone(p.phone)
        if phone_key:
            existing = await self._lead_by_phone(db, decision.organization_id, phone_key)
            if existing is not None:
                return self._existing_lead(existing, p.phone)

        lead = Lead(
            organization_id=decision.organization_id,
            name=p.name,
            phone=p.phone,
            phone_normalized=phone_key,
            email=p.email,
            source=p.source,
            interested_in=p.interested_in,
            budget_min=p.budget_min,
            budget_max=p.budget_max,
            notes=p.notes,
            priority=p.priority,
        )
        try:
            async with db.begin_nested():
                db.add(lead)
                await db.flush()
        except IntegrityError:
            # uq_lead_phone: a concurrent execution inserted the same phone first
            existing = await self._lead_by_phone(db, decision.organization_id, phone_key) if phone_key else None
            if existing is None:
                raise
            logger.info("Lead with phone %s was created concurrently; reusing %s", phone_key, existing.id)
            return self._existing_lead(existing, p.phone)
        return ExecutionResult(success=True, message=f"Lead '{lead.name}' created", entity_id=lead.id, entity_type="lead")

    async def _update_client(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        decision_type = DecisionType(decision.decision_type)
        p = parse_parameters(decision_type, decision.parameters)
        if decision_type == DecisionType.UPDATE_CLIENT:
            updates = dict(p.updates)
        elif decision_type == DecisionType.UPDATE_BUDGET:
            updates = {k: v for k, v in (("budget_min", p.budget_min), ("budget_max", p.budget_max)) if v is not None}
        elif decision_type == DecisionType.CHANGE_STATUS:
            updates = {"status": p.status}
        else:
            updates = {"assigned_agent_id": p.agent_id}

        client = await db.get(Client, p.client_id)
        if client is None or client.organization_id != decision.organization_id:
            raise EntityNotFound(f"Client {p.client_id} not found")

        previous = {field: _json_safe(getattr(client, field)) for field in updates}
        for field, value in updates.items():
            setattr(client, field, value)

        db.add(Note(
            organization_id=decision.organization_id,
            entity_type="client",
            entity_id=client.id,
            note_type="system",
            content=f"Client information updated via voice note: {', '.join(sorted(updates))}",
            communication_id=decision.communication_id,
            created_by="voice_pipeline",
        ))
        await db.flush()
        return ExecutionResult(
            success=True,
            message=f"Client '{client.name}' updated",
            entity_id=client.id,
            entity_type="client",
            data={"previous": previous, "updated": {k: _json_safe(v) for k, v in updates.items()}},
        )

    async def _schedule_appointment(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        p = parse_parameters(DecisionType.SCHEDULE_APPOINTMENT, decision.parameters)
        appointment = Appointment(
            organization_id=decision.organization_id,
            title=p.title,
            description=p.description,
            appointment_type=p.appointment_type,
            client_id=p.client_id,
            lead_id=p.lead_id,
            property_id=p.property_id,
            start_time=p.start_time,
            end_time=p.end_time,
            duration_minutes=p.duration_minutes,
            location=p.location,
            notes=p.notes,
        )
        db.add(appointment)
        await db.flush()
        await notify_appointment_scheduled(db, appointment)
        return ExecutionResult(
            success=True,
            message=f"Appointment '{appointment.title}' scheduled for {appointment.start_time:%Y-%m-%d %H:%M} UTC",
            entity_id=appointment.id,
            entity_type="appointment",
        )

    async def _create_task(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        p = parse_parameters(DecisionType.CREATE_TASK, decision.parameters)
        task = Task(
            organization_id=decision.organization_id,
            title=p.title,
            description=p.description,
            task_type=p.task_type,
            priority=p.priority,
            due_date=p.due_date or utcnow() + timedelta(days=3),
            assigned_to=p.assigned_to,
            related_entity_type=p.related_entity_type,
            related_entity_id=p.related_entity_id,
        )
        db.add(task)
        await db.flush()
        await notify_task_created(db, task)
        return ExecutionResult(success=True, message=f"Task '{task.title}' created", entity_id=task.id, entity_type="task")

    async def _update_property(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        p = parse_parameters(DecisionType.UPDATE_PROPERTY, decision.parameters)
        prop = await db.get(Property, p.property_id)
        if prop is None or prop.organization_id != decision.organization_id:
            raise EntityNotFound(f"Property {p.property_id} not found")
        previous = {field: _json_safe(getattr(prop, field)) for field in p.updates}
        for field, value in p.updates.items():
            setattr(prop, field, value)
        await db.flush()
        return ExecutionResult(
            success=True,
            message=f"Property '{prop.title}' updated",
            entity_id=prop.id,
            entity_type="property",
            data={"previous": previous, "updated": p.updates},
        )

    async def _add_note(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        p = parse_parameters(DecisionType.ADD_NOTE, decision.parameters)
        note = Note(
            organization_id=decision.organization_id,
            entity_type=p.entity_type,
            entity_id=p.entity_id,
            note_type="voice_note",
            content=p.note_content,
            communication_id=decision.communication_id,
            created_by="voice_pipeline",
        )
        db.add(note)
        await db.flush()
        return ExecutionResult(success=True, message="Note added", entity_id=note.id, entity_type="communication")

    async def _send_message(self, db: AsyncSession, decision: Decision, action: CRMAction) -> ExecutionResult:
        p = parse_parameters(DecisionType.SEND_MESSAGE, decision.parameters)
        entity_type, entity_id = ("client", p.client_id) if p.client_id else ("lead", p.lead_id)
        note = Note(
            organization_id=decision.organization_id,
            entity_type=entity_type if entity_id else "general",
            entity_id=entity_id,
            note_type="outbound_message",
            content=p.content,
            communication_id=decision.communication_id,
            created_by="voice_pipeline",
        )
        db.add(note)
        await db.flush()

        delivered = False
        if p.channel == "telegram" and p.client_id and self.message_sender is not None:
            result = await db.execute(select(ChatLink).where(ChatLink.client_id == p.client_id))
            link = result.scalars().first()
            if link is not None:
                try:
                    await self.message_sender(link.chat_id, p.content)
                    delivered = True
                except Exception as e:
                    logger.error("Outbound message delivery to chat %s failed: %s", link.chat_id, e)

        return ExecutionResult(
            success=True,
            message="Message delivered" if delivered else "Message recorded",
            entity_id=note.id,
            entity_type="communication",
            data={"delivered": delivered, "channel": p.channel},
        )
