"""In-app notifications raised by CRM actions (new appointment, new task)."""

import logging
from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)


async def create_notification(
    db: AsyncSession,
    organization_id: str,
    title: str,
    message: str,
    notification_type: NotificationType,
    recipient: Optional[str] = None,
    priority: str = "normal",
    data: Optional[dict[str, Any]] = None,
) -> Notification:
    """Add a notification to the session.

    Reusable from any action handler; the caller's commit makes it visible
    together with the entity it announces.
    """
    notification = Notification(
        organization_id=organization_id,
        recipient=recipient,
        title=title,
        message=message,
        type=notification_type,
        priority=priority,
        data=data or {},
        is_read=False,
    )
    db.add(notification)
    await db.flush()

    logger.info(
        "Created notification for %s: %s (%s)",
        recipient or organization_id,
        title,
        notification_type.value,
    )
    return notification


async def notify_appointment_scheduled(db: AsyncSession, appointment) -> Notification:
    start = appointment.start_time.strftime("%d %b %Y %H:%M UTC")
    return await create_notification(
        db=db,
        organization_id=appointment.organization_id,
        title="Appointment scheduled",
        message=f"{appointment.title} on {start}",
        notification_type=NotificationType.APPOINTMENT,
        data={"appointment_id": str(appointment.id)},
    )


async def notify_task_created(db: AsyncSession, task) -> Notification:
    due = task.due_date.strftime("%d %b %Y") if task.due_date else "no due date"
    return await create_notification(
        db=db,
        organization_id=task.organization_id,
        title="New task",
        message=f"{task.title} (due {due})",
        notification_type=NotificationType.TASK,
        recipient=task.assigned_to,
        priority=task.priority,
        data={"task_id": str(task.id)},
    )
