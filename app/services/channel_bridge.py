"""Telegram side of the pipeline.

Outbound: one suggestions message per voice note with inline approve /
reject / edit buttons, edited in place as decisions are resolved.
Inbound: voice notes become Communication + ProcessingJob rows, button
presses go through the approval gate, and a handful of text commands.
"""

import html
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.events import (
    APPROVAL_REQUEST_CREATED, APPROVAL_REQUEST_RESOLVED, COMMUNICATION_STATUS, EventBus,
)
from app.core.exceptions import ApprovalAlreadyResolved, ApprovalError, ApprovalExpired
from app.models.approval import ApprovalRequest
from app.models.chat_link import ChatLink
from app.models.client import Client
from app.models.communication import (
    Communication, CommunicationChannel, ProcessingJob, ProcessingStatus,
)
from app.models.decision import Decision, DecisionStatus, DecisionType
from app.services.approval_gate import ApprovalGate
from app.services.telegram import TelegramClient

logger = logging.getLogger(__name__)

CALLBACK_ACTIONS = ("approve", "reject", "edit", "approve_all", "reject_all")

STATUS_ICONS = {
    DecisionStatus.PENDING: "⏳",
    DecisionStatus.APPROVED: "👍",
    DecisionStatus.COMPLETED: "✅",
    DecisionStatus.REJECTED: "❌",
    DecisionStatus.FAILED: "⚠️",
}

TYPE_LABELS = {
    DecisionType.CREATE_LEAD: "New lead",
    DecisionType.UPDATE_CLIENT: "Update client",
    DecisionType.SCHEDULE_APPOINTMENT: "Schedule",
    DecisionType.CREATE_TASK: "Task",
    DecisionType.UPDATE_PROPERTY: "Update property",
    DecisionType.SEND_MESSAGE: "Send message",
    DecisionType.CHANGE_STATUS: "Change status",
    DecisionType.ASSIGN_AGENT: "Assign agent",
    DecisionType.UPDATE_BUDGET: "Update budget",
    DecisionType.ADD_NOTE: "Note",
}

WELCOME_TEXT = (
    "👋 <b>Welcome!</b> I log your voice notes straight into the CRM.\n\n"
    "<b>How it works:</b>\n"
    "1. Send me a voice message\n"
    "2. I transcribe and summarise it\n"
    "3. You approve the suggested CRM updates with one tap\n\n"
    "<b>Commands:</b>\n"
    "/start - show this message\n"
    "/status - pipeline status for this chat\n"
    "/help - get help\n"
    "/link &lt;client_id&gt; - link this chat to a client"
)

HELP_TEXT = (
    "<b>Need help?</b>\n\n"
    "• Voice messages up to 20MB\n"
    "• Mention names, dates and amounts (\"15 lakh\", \"tomorrow at 4\")\n"
    "• Tap ✅ to apply a suggestion, ❌ to drop it, ✏️ to ask for changes\n"
    "• Use /link to attach this chat to a CRM client"
)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def build_callback_data(action: str, index: int, short_id: str) -> str:
    return f"{action}:{index}:{short_id}"


def parse_callback_data(data: str) -> Optional[tuple[str, int, str]]:
    parts = (data or "").split(":")
    if len(parts) != 3 or parts[0] not in CALLBACK_ACTIONS:
        return None
    try:
        index = int(parts[1])
    except ValueError:
        return None
    if not parts[2]:
        return None
    return parts[0], index, parts[2].lower()


def communication_short_id(communication_id: UUID) -> str:
    return communication_id.hex[:8]


def _local_time(value: Any) -> str:
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        return str(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(settings.BUSINESS_TIMEZONE)).strftime("%a %d %b, %H:%M")


def _money(value: Any) -> str:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return str(value)
    if amount >= 10_000_000:
        return f"₹{amount / 10_000_000:g} Cr"
    if amount >= 100_000:
        return f"₹{amount / 100_000:g} L"
    return f"₹{amount:,.0f}"


def describe_decision(decision: Decision) -> str:
    """One-line human description of what a decision would do."""
    p = decision.parameters or {}
    dt = DecisionType(decision.decision_type)
    label = TYPE_LABELS[dt]
    if dt == DecisionType.SCHEDULE_APPOINTMENT:
        detail = f"{p.get('title', 'Appointment')} · {_local_time(p.get('start_time'))}"
    elif dt == DecisionType.CREATE_TASK:
        detail = p.get("title", "")
        if p.get("due_date"):
            detail += f" (due {_local_time(p['due_date'])})"
    elif dt == DecisionType.CREATE_LEAD:
        detail = " ".join(filter(None, [p.get("name"), p.get("phone")]))
    elif dt == DecisionType.UPDATE_BUDGET:
        detail = f"{_money(p.get('budget_min'))} – {_money(p.get('budget_max'))}"
    elif dt in (DecisionType.UPDATE_CLIENT, DecisionType.UPDATE_PROPERTY):
        detail = ", ".join(f"{k}={v}" for k, v in (p.get("updates") or {}).items())
    elif dt == DecisionType.CHANGE_STATUS:
        detail = str(p.get("status", ""))
    elif dt == DecisionType.ASSIGN_AGENT:
        detail = str(p.get("agent_id", ""))
    elif dt == DecisionType.SEND_MESSAGE:
        detail = p.get("content", "")
    else:
        detail = p.get("note_content", "")
    if len(detail) > 120:
        detail = detail[:117] + "..."
    return f"<b>{label}</b>: {html.escape(detail)}"


def render_suggestions(decisions: Sequence[Decision], context_summary: Optional[str] = None) -> str:
    lines = ["🎤 <b>Voice note processed</b>"]
    if context_summary:
        lines.append(f"<i>{html.escape(context_summary)}</i>")
    lines.append("")
    for index, decision in enumerate(decisions, start=1):
        status = DecisionStatus(decision.status)
        line = f"{index}. {STATUS_ICONS[status]} {describe_decision(decision)} ({decision.confidence_score:.0%})"
        if status in (DecisionStatus.APPROVED, DecisionStatus.COMPLETED) and decision.approved_by:
            line += f" · {status.value} by {html.escape(decision.approved_by)}"
        elif status == DecisionStatus.REJECTED and decision.rejected_by:
            line += f" · rejected by {html.escape(decision.rejected_by)}"
        elif status == DecisionStatus.FAILED:
            line += f" · failed: {html.escape((decision.error_message or '')[:80])}"
        lines.append(line)
    return "\n".join(lines)


def build_keyboard(decisions: Sequence[Decision], comm_short_id: str) -> dict[str, Any]:
    rows = []
    pending = 0
    for index, decision in enumerate(decisions, start=1):
        if decision.status != DecisionStatus.PENDING:
            continue
        pending += 1
        rows.append([
            {"text": f"✅ {index}", "callback_data": build_callback_data("approve", index, decision.short_id)},
            {"text": f"❌ {index}", "callback_data": build_callback_data("reject", index, decision.short_id)},
            {"text": f"✏️ {index}", "callback_data": build_callback_data("edit", index, decision.short_id)},
        ])
    if pending > 1:
        rows.append([
            {"text": "✅ Approve all", "callback_data": build_callback_data("approve_all", 0, comm_short_id)},
            {"text": "❌ Reject all", "callback_data": build_callback_data("reject_all", 0, comm_short_id)},
        ])
    return {"inline_keyboard": rows}


def _actor(user: Optional[dict[str, Any]]) -> str:
    user = user or {}
    if user.get("username"):
        return f"telegram:@{user['username']}"
    return f"telegram:{user.get('id', 'unknown')}"


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------

class ChannelBridge:
    def __init__(
        self,
        telegram: TelegramClient,
        gate: ApprovalGate,
        session_factory: async_sessionmaker,
        events: EventBus,
        organization_id: Optional[str] = None,
        allowed_chat_ids: Optional[set[str]] = None,
        allowed_usernames: Optional[set[str]] = None,
    ):
        self.telegram = telegram
        self.gate = gate
        self.session_factory = session_factory
        self.events = events
        self.organization_id = organization_id or settings.DEFAULT_ORGANIZATION_ID
        self.allowed_chat_ids = settings.telegram_allowed_chat_ids if allowed_chat_ids is None else allowed_chat_ids
        self.allowed_usernames = (
            settings.telegram_allowed_usernames if allowed_usernames is None else allowed_usernames
        )

    def subscribe(self) -> None:
        self.events.subscribe(APPROVAL_REQUEST_CREATED, self.on_approval_request_created)
        self.events.subscribe(APPROVAL_REQUEST_RESOLVED, self.on_approval_request_resolved)

    def unsubscribe(self) -> None:
        self.events.unsubscribe(APPROVAL_REQUEST_CREATED, self.on_approval_request_created)
        self.events.unsubscribe(APPROVAL_REQUEST_RESOLVED, self.on_approval_request_resolved)

    def is_allowed(self, chat_id: str, username: Optional[str]) -> bool:
        if self.allowed_chat_ids and chat_id not in self.allowed_chat_ids:
            return False
        if self.allowed_usernames and (username or "").lower() not in self.allowed_usernames:
            return False
        return True

    # --- outbound ---------------------------------------------------------

    async def send_text(self, chat_id: str | int, text: str) -> None:
        await self.telegram.send_message(chat_id, html.escape(text))

    async def send_decision_suggestions(
        self,
        chat_id: str | int,
        decisions: Sequence[Decision],
        context_summary: Optional[str] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> Optional[dict[str, Any]]:
        """Post the suggestions message with one button row per pending decision.

        Args:
            chat_id: Chat to post in.
            decisions: Decisions suggested from one voice note.
            context_summary: Summary shown above the list.
            reply_to_message_id: The voice message to reply to, if any.

        Returns:
            The sent Bot API message, or None when nothing was sent. Never raises.
        """
        if not decisions:
            return None
        try:
            return await self.telegram.send_message(
                chat_id,
                render_suggestions(decisions, context_summary),
                reply_markup=build_keyboard(decisions, communication_short_id(decisions[0].communication_id)),
                reply_to_message_id=reply_to_message_id,
            )
        except Exception as e:
            logger.error("Failed to send decision suggestions to chat %s: %s", chat_id, e)
            return None

    async def send_error_notification(
        self, chat_id: str | int, reason: str, reply_to_message_id: Optional[int] = None,
    ) -> None:
        try:
            await self.telegram.send_message(
                chat_id,
                f"⚠️ Could not process your voice note:\n<code>{html.escape(reason[:500])}</code>",
                reply_to_message_id=reply_to_message_id,
            )
        except Exception as e:
            logger.error("Failed to send error notification to chat %s: %s", chat_id, e)

    # --- inbound ----------------------------------------------------------

    async def process_update(self, update: dict[str, Any]) -> None:
        """Entry point shared by the webhook endpoint and the poller."""
        async with self.session_factory() as db:
            if update.get("callback_query"):
                await self.handle_callback(db, update["callback_query"])
                return

            message = update.get("message")
            if not message:
                return
            chat_id = str(message["chat"]["id"])
            username = (message.get("from") or {}).get("username")

            if not self.is_allowed(chat_id, username):
                logger.warning("Rejected message from unauthorised chat %s (@%s)", chat_id, username)
                try:
                    await self.telegram.send_message(chat_id, "⛔ You are not authorised to use this bot.")
                except Exception as e:
                    logger.error("Failed to notify unauthorised chat %s: %s", chat_id, e)
                return

            if self._audio_of(message):
                await self.ingest_voice_message(db, message)
            elif (message.get("text") or "").startswith("/"):
                await self.handle_command(db, chat_id, message["text"].strip())

    @staticmethod
    def _audio_of(message: dict[str, Any]) -> Optional[dict[str, Any]]:
        if message.get("voice"):
            return message["voice"]
        if message.get("audio"):
            return message["audio"]
        document = message.get("document") or {}
        if (document.get("mime_type") or "").startswith("audio/"):
            return document
        return None

    async def ingest_voice_message(self, db: AsyncSession, message: dict[str, Any]) -> Optional[Communication]:
        """Create Communication + ProcessingJob; None for a redelivered message."""
        audio = self._audio_of(message)
        chat_id = str(message["chat"]["id"])
        message_id = str(message["message_id"])

        result = await db.execute(
            select(Communication.id).where(and_(
                Communication.channel == CommunicationChannel.TELEGRAM,
                Communication.channel_id == chat_id,
                Communication.source_message_id == message_id,
            ))
        )
        if result.scalar_one_or_none() is not None:
            logger.info("Duplicate delivery of message %s in chat %s ignored", message_id, chat_id)
            return None

        link = await self._chat_link(db, chat_id)
        communication = Communication(
            organization_id=link.organization_id if link else self.organization_id,
            channel=CommunicationChannel.TELEGRAM,
            channel_id=chat_id,
            source_message_id=message_id,
            channel_metadata={
                "message_id": message["message_id"],
                "from": message.get("from") or {},
                "file_unique_id": audio.get("file_unique_id"),
            },
            client_id=link.client_id if link else None,
            audio_file_id=audio["file_id"],
            audio_mime=audio.get("mime_type"),
            duration_seconds=audio.get("duration"),
            status=ProcessingStatus.QUEUED,
        )
        db.add(communication)
        try:
            await db.flush()
            db.add(ProcessingJob(
                communication_id=communication.id,
                source_type=CommunicationChannel.TELEGRAM.value,
                source_file_id=audio["file_id"],
                source_message_id=message_id,
                max_retries=settings.JOB_MAX_RETRIES,
                status=ProcessingStatus.QUEUED,
            ))
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Message %s in chat %s already ingested", message_id, chat_id)
            return None

        logger.info("Voice note %s queued from chat %s", communication.id, chat_id)
        await self.events.publish(COMMUNICATION_STATUS, {
            "communication_id": str(communication.id),
            "status": ProcessingStatus.QUEUED.value,
        })
        try:
            await self.telegram.send_message(
                chat_id, "🎤 Voice note received. Processing…", reply_to_message_id=message["message_id"],
            )
        except Exception as e:
            logger.error("Failed to acknowledge voice note in chat %s: %s", chat_id, e)
        return communication

    async def _chat_link(self, db: AsyncSession, chat_id: str) -> Optional[ChatLink]:
        result = await db.execute(select(ChatLink).where(ChatLink.chat_id == chat_id))
        return result.scalar_one_or_none()

    async def handle_command(self, db: AsyncSession, chat_id: str, text: str) -> None:
        command, _, argument = text.partition(" ")
        command = command.split("@")[0].lower()
        argument = argument.strip()

        if command == "/start":
            reply = WELCOME_TEXT
        elif command == "/help":
            reply = HELP_TEXT
        elif command == "/status":
            reply = await self._status_text(db, chat_id)
        elif command == "/link":
            reply = await self._link_chat(db, chat_id, argument)
        else:
            reply = "Unknown command. Try /help"

        try:
            await self.telegram.send_message(chat_id, reply)
        except Exception as e:
            logger.error("Failed to answer %s in chat %s: %s", command, chat_id, e)

    async def _status_text(self, db: AsyncSession, chat_id: str) -> str:
        result = await db.execute(
            select(Communication.status).where(Communication.channel_id == chat_id)
        )
        statuses = [row[0] for row in result.all()]
        in_progress = sum(1 for s in statuses if s not in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED))
        pending = await db.execute(
            select(Decision.id)
            .join(Communication, Communication.id == Decision.communication_id)
            .where(and_(Communication.channel_id == chat_id, Decision.status == DecisionStatus.PENDING))
        )
        return (
            "✅ Bot is active.\n"
            f"Voice notes: {len(statuses)} ({in_progress} in progress)\n"
            f"Suggestions awaiting approval: {len(pending.all())}"
        )

    async def _link_chat(self, db: AsyncSession, chat_id: str, argument: str) -> str:
        try:
            client_id = UUID(argument)
        except ValueError:
            return "Usage: /link &lt;client_id&gt;"
        client = await db.get(Client, client_id)
        if client is None:
            return f"Client {html.escape(argument)} not found."

        link = await self._chat_link(db, chat_id)
        if link is None:
            link = ChatLink(organization_id=client.organization_id, chat_id=chat_id)
            db.add(link)
        link.client_id = client.id
        link.organization_id = client.organization_id
        await db.commit()
        logger.info("Chat %s linked to client %s", chat_id, client.id)
        return f"✅ This chat is now linked to {html.escape(client.name)}"

    # --- callbacks --------------------------------------------------------

    async def handle_callback(self, db: AsyncSession, callback_query: dict[str, Any]) -> str:
        """Apply a button press and re-render the message.

        Presses from chats or users outside the allow-lists change nothing.

        Args:
            db: Session used for the lookup and the approval transition.
            callback_query: The Bot API ``callback_query`` object.

        Returns:
            The toast text shown to the user who pressed the button.
        """
        parsed = parse_callback_data(callback_query.get("data", ""))
        message = callback_query.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", ""))
        user = callback_query.get("from") or {}
        actor = _actor(user)

        if not self.is_allowed(chat_id, user.get("username")):
            logger.warning("Rejected button press from unauthorised %s in chat %s", actor, chat_id)
            answer = "⛔ Not authorised"
            communication_id = None
        elif parsed is None:
            answer = "Unknown action"
            communication_id = None
        else:
            action, _, short_id = parsed
            if action in ("approve_all", "reject_all"):
                communication = await self.resolve_communication(db, short_id, chat_id)
                communication_id = communication.id if communication else None
                answer = await self._apply_bulk(db, action, communication, actor)
            else:
                decision = await self.resolve_decision(db, short_id, chat_id)
                communication_id = decision.communication_id if decision else None
                answer = await self._apply_one(db, action, decision, actor)

        try:
            await self.telegram.answer_callback_query(callback_query["id"], answer)
        except Exception as e:
            logger.error("Failed to answer callback query: %s", e)

        if communication_id is not None and message.get("message_id"):
            await self._refresh_message(db, chat_id, message["message_id"], communication_id)
        return answer

    async def resolve_decision(self, db: AsyncSession, short_id: str, chat_id: str) -> Optional[Decision]:
        scoped = await db.execute(
            select(Decision)
            .join(Communication, Communication.id == Decision.communication_id)
            .where(and_(Decision.short_id == short_id, Communication.channel_id == chat_id))
            .order_by(Decision.suggested_at.desc())
        )
        matches = scoped.scalars().all()
        if not matches:
            unscoped = await db.execute(
                select(Decision).where(Decision.short_id == short_id).order_by(Decision.suggested_at.desc())
            )
            matches = unscoped.scalars().all()
        if len(matches) > 1:
            logger.warning("Short id %s matches %d decisions; using the most recent", short_id, len(matches))
        return matches[0] if matches else None

    async def resolve_communication(self, db: AsyncSession, short_id: str, chat_id: str) -> Optional[Communication]:
        result = await db.execute(
            select(Communication)
            .where(Communication.channel_id == chat_id)
            .order_by(Communication.created_at.desc())
            .limit(500)
        )
        matches = [c for c in result.scalars().all() if communication_short_id(c.id) == short_id]
        if len(matches) > 1:
            logger.warning("Short id %s matches %d communications; using the most recent", short_id, len(matches))
        return matches[0] if matches else None

    async def _apply_one(self, db: AsyncSession, action: str, decision: Optional[Decision], actor: str) -> str:
        if decision is None:
            return "Suggestion not found"
        try:
            if action == "approve":
                await self.gate.approve_decision(db, decision.id, actor, via="telegram")
                await db.refresh(decision)
                if decision.status == DecisionStatus.PENDING:
                    return "Approval recorded, waiting for the next approver"
                return "Approved ✅"
            if action == "reject":
                await self.gate.reject_decision(db, decision.id, actor, via="telegram")
                return "Rejected ❌"
            await self.gate.request_decision_changes(
                db, decision.id, actor, notes="edit requested from chat", via="telegram",
            )
            return "Marked for changes. Send a new voice note with the corrections"
        except ApprovalAlreadyResolved:
            return "Already resolved"
        except ApprovalExpired:
            return "This suggestion has expired"
        except ApprovalError as e:
            logger.error("Callback %s on decision %s failed: %s", action, decision.short_id, e)
            return "Could not apply that"

    async def _apply_bulk(
        self, db: AsyncSession, action: str, communication: Optional[Communication], actor: str,
    ) -> str:
        if communication is None:
            return "Voice note not found"
        result = await db.execute(
            select(Decision.id).where(and_(
                Decision.communication_id == communication.id,
                Decision.status == DecisionStatus.PENDING,
            ))
        )
        done = 0
        for decision_id in result.scalars().all():
            try:
                if action == "approve_all":
                    await self.gate.approve_decision(db, decision_id, actor, via="telegram")
                else:
                    await self.gate.reject_decision(db, decision_id, actor, via="telegram")
                done += 1
            except ApprovalError as e:
                logger.warning("Bulk %s skipped decision %s: %s", action, decision_id, e)
        verb = "Approved" if action == "approve_all" else "Rejected"
        return f"{verb} {done} suggestion(s)"

    async def _refresh_message(self, db: AsyncSession, chat_id: str, message_id: int, communication_id: UUID) -> None:
        result = await db.execute(
            select(Decision)
            .where(Decision.communication_id == communication_id)
            .order_by(Decision.suggested_at, Decision.id)
            .execution_options(populate_existing=True)
        )
        decisions = result.scalars().all()
        communication = await db.get(Communication, communication_id)
        try:
            await self.telegram.edit_message_text(
                chat_id,
                message_id,
                render_suggestions(decisions, communication.summary if communication else None),
                reply_markup=build_keyboard(decisions, communication_short_id(communication_id)),
            )
        except Exception as e:
            logger.error("Failed to update suggestions message %s: %s", message_id, e)

    # --- event handlers ---------------------------------------------------

    async def _decision_and_chat(self, db: AsyncSession, decision_id: str) -> tuple[Optional[Decision], Optional[Communication]]:
        decision = await db.get(Decision, UUID(decision_id))
        if decision is None:
            return None, None
        communication = await db.get(Communication, decision.communication_id)
        if communication is None or communication.channel != CommunicationChannel.TELEGRAM or not communication.channel_id:
            return decision, None
        return decision, communication

    async def on_approval_request_created(self, event_type: str, payload: dict[str, Any]) -> None:
        if not payload.get("notify_channel", True):
            return
        async with self.session_factory() as db:
            decision, communication = await self._decision_and_chat(db, payload["decision_id"])
            if communication is None:
                return
            request = await db.get(ApprovalRequest, UUID(payload["approval_request_id"]))
            summary = "Approval needed"
            if request is not None and request.change_summary:
                summary = f"Approval needed: {request.change_summary}"
            await self.send_decision_suggestions(communication.channel_id, [decision], summary)

    async def on_approval_request_resolved(self, event_type: str, payload: dict[str, Any]) -> None:
        if payload.get("via") == "telegram":
            return
        async with self.session_factory() as db:
            decision, communication = await self._decision_and_chat(db, payload["decision_id"])
            if communication is None:
                return
            text = (
                f"{describe_decision(decision)}\n"
                f"→ {html.escape(str(payload.get('status')))} by {html.escape(str(payload.get('resolved_by')))}"
            )
            try:
                await self.telegram.send_message(communication.channel_id, text)
            except Exception as e:
                logger.error("Failed to announce resolution in chat %s: %s", communication.channel_id, e)
