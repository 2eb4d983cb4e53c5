"""Tests for the Telegram bridge: ingestion, commands, buttons and rendering."""

from unittest.mock import ANY

import pytest
from sqlalchemy import func, select

from app.models.chat_link import ChatLink
from app.models.communication import Communication, ProcessingJob
from app.models.decision import DecisionStatus, DecisionType
from app.services.channel_bridge import (
    ChannelBridge,
    build_keyboard,
    communication_short_id,
    parse_callback_data,
    render_suggestions,
)
from tests.conftest import make_client, make_communication, make_decision


def voice_update(message_id=10, chat_id=4242, username="agent", update_id=1):
    return {
        "update_id": update_id,
        "message": {
            "message_id": message_id,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": 7, "username": username},
            "voice": {"file_id": "F1", "file_unique_id": "U1", "duration": 7, "mime_type": "audio/ogg"},
        },
    }


def text_update(text, chat_id=4242):
    return {"update_id": 2, "message": {"message_id": 11, "chat": {"id": chat_id}, "from": {"id": 7}, "text": text}}


def callback(data, chat_id=4242, message_id=500):
    return {
        "id": "cb1",
        "from": {"id": 7, "username": "agent"},
        "message": {"message_id": message_id, "chat": {"id": chat_id}},
        "data": data,
    }


def sent_texts(telegram):
    return [c.args[1] for c in telegram.send_message.await_args_list]


# --- rendering -------------------------------------------------------------

def test_parse_callback_data():
    assert parse_callback_data("approve:2:AB12CD34") == ("approve", 2, "ab12cd34")
    assert parse_callback_data("approve_all:0:deadbeef") == ("approve_all", 0, "deadbeef")
    assert parse_callback_data("launch:1:abc") is None
    assert parse_callback_data("approve:x:abc") is None
    assert parse_callback_data("approve:1:") is None
    assert parse_callback_data("") is None


@pytest.mark.asyncio
async def test_keyboard_only_offers_pending_decisions(db):
    communication = await make_communication(db)
    first = await make_decision(db, communication)
    second = await make_decision(db, communication, DecisionType.CREATE_TASK, {"title": "Call back"})
    done = await make_decision(db, communication, status=DecisionStatus.COMPLETED)

    keyboard = build_keyboard([first, second, done], communication_short_id(communication.id))

    rows = keyboard["inline_keyboard"]
    assert len(rows) == 3
    assert rows[0][0]["callback_data"] == f"approve:1:{first.short_id}"
    assert rows[1][2]["callback_data"] == f"edit:2:{second.short_id}"
    assert rows[2][0]["callback_data"] == f"approve_all:0:{communication.id.hex[:8]}"

    single = build_keyboard([first], communication_short_id(communication.id))
    assert len(single["inline_keyboard"]) == 1


@pytest.mark.asyncio
async def test_render_suggestions(db):
    communication = await make_communication(db)
    viewing = await make_decision(
        db, communication, DecisionType.SCHEDULE_APPOINTMENT,
        {"title": "Viewing <Sunset Villa>", "start_time": "2026-03-05T10:30:00"},
    )
    budget = await make_decision(
        db, communication, DecisionType.UPDATE_BUDGET,
        {"client_id": "6f1c1f7e-8f43-4f3e-9a54-3c7d1f3b2a10", "budget_min": 5_000_000, "budget_max": 12_000_000},
        status=DecisionStatus.COMPLETED, approved_by="telegram:@agent",
    )

    text = render_suggestions([viewing, budget], "Client wants a viewing")

    assert "<i>Client wants a viewing</i>" in text
    assert "Viewing &lt;Sunset Villa&gt;" in text
    assert "Thu 05 Mar, 16:00" in text
    assert "₹50 L – ₹1.2 Cr" in text
    assert "completed by telegram:@agent" in text


# --- inbound messages ------------------------------------------------------

@pytest.mark.asyncio
async def test_voice_message_creates_communication_and_job(db, context, telegram):
    await context.bridge.process_update(voice_update())

    communication = (await db.execute(select(Communication))).scalar_one()
    assert communication.channel == "telegram"
    assert communication.channel_id == "4242"
    assert communication.audio_file_id == "F1"
    assert communication.channel_metadata["message_id"] == 10
    job = (await db.execute(select(ProcessingJob))).scalar_one()
    assert job.communication_id == communication.id
    assert job.status == "queued"
    telegram.send_message.assert_awaited_once_with("4242", ANY, reply_to_message_id=10)


@pytest.mark.asyncio
async def test_redelivered_voice_message_is_ignored(db, context):
    await context.bridge.process_update(voice_update())
    await context.bridge.process_update(voice_update())

    count = (await db.execute(select(func.count()).select_from(Communication))).scalar()
    assert count == 1


@pytest.mark.asyncio
async def test_audio_document_is_accepted(db, context):
    update = voice_update()
    message = update["message"]
    message["document"] = message.pop("voice")
    message["document"]["mime_type"] = "audio/mpeg"

    await context.bridge.process_update(update)

    assert (await db.execute(select(func.count()).select_from(ProcessingJob))).scalar() == 1


@pytest.mark.asyncio
async def test_unauthorised_chat_is_refused(db, context, telegram, session_factory, events):
    bridge = ChannelBridge(
        telegram, context.gate, session_factory, events,
        allowed_chat_ids={"1"}, allowed_usernames=set(),
    )

    await bridge.process_update(voice_update())

    assert (await db.execute(select(func.count()).select_from(Communication))).scalar() == 0
    assert sent_texts(telegram)[0].startswith("⛔")


def test_username_allow_list_is_strict(context, telegram, session_factory, events):
    bridge = ChannelBridge(
        telegram, context.gate, session_factory, events,
        allowed_chat_ids=set(), allowed_usernames={"agent"},
    )

    assert bridge.is_allowed("4242", "Agent") is True
    assert bridge.is_allowed("4242", None) is False
    assert bridge.is_allowed("4242", "someone") is False


@pytest.mark.asyncio
async def test_link_command_attaches_chat_to_client(db, context, telegram):
    client = await make_client(db)

    await context.bridge.process_update(text_update(f"/link {client.id}"))
    await context.bridge.process_update(voice_update())

    link = (await db.execute(select(ChatLink))).scalar_one()
    assert link.client_id == client.id
    assert "linked to Priya Sharma" in sent_texts(telegram)[0]
    communication = (await db.execute(select(Communication))).scalar_one()
    assert communication.client_id == client.id


@pytest.mark.asyncio
async def test_commands(context, telegram):
    await context.bridge.process_update(text_update("/start"))
    await context.bridge.process_update(text_update("/status"))
    await context.bridge.process_update(text_update("/link not-a-uuid"))
    await context.bridge.process_update(text_update("/dance"))

    texts = sent_texts(telegram)
    assert "Welcome" in texts[0]
    assert "Voice notes: 0 (0 in progress)" in texts[1]
    assert texts[2].startswith("Usage: /link")
    assert texts[3] == "Unknown command. Try /help"


# --- buttons ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_approve_button_executes_and_edits_message(db, context, telegram):
    communication = await make_communication(db)
    decision = await make_decision(db, communication)

    answer = await context.bridge.handle_callback(db, callback(f"approve:1:{decision.short_id}"))

    assert answer == "Approved ✅"
    await db.refresh(decision)
    assert decision.status == DecisionStatus.COMPLETED
    assert decision.approved_by == "telegram:@agent"
    telegram.answer_callback_query.assert_awaited_once_with("cb1", "Approved ✅")
    telegram.edit_message_text.assert_awaited_once()
    edited_text = telegram.edit_message_text.await_args.args[2]
    assert "✅" in edited_text

    again = await context.bridge.handle_callback(db, callback(f"approve:1:{decision.short_id}"))
    assert again == "Already resolved"


@pytest.mark.asyncio
async def test_reject_and_edit_buttons(db, context):
    communication = await make_communication(db)
    rejected = await make_decision(db, communication)
    edited = await make_decision(db, communication)

    assert await context.bridge.handle_callback(db, callback(f"reject:1:{rejected.short_id}")) == "Rejected ❌"
    answer = await context.bridge.handle_callback(db, callback(f"edit:2:{edited.short_id}"))

    assert answer.startswith("Marked for changes")
    await db.refresh(rejected)
    await db.refresh(edited)
    assert rejected.status == DecisionStatus.REJECTED
    assert edited.status == DecisionStatus.REJECTED
    assert edited.rejected_reason == "changes requested: edit requested from chat"


@pytest.mark.asyncio
async def test_approve_all(db, context):
    communication = await make_communication(db)
    await make_decision(db, communication)
    await make_decision(db, communication, DecisionType.CREATE_TASK, {"title": "Send brochure"})
    await make_decision(db, communication, status=DecisionStatus.REJECTED)

    answer = await context.bridge.handle_callback(
        db, callback(f"approve_all:0:{communication_short_id(communication.id)}")
    )

    assert answer == "Approved 2 suggestion(s)"


@pytest.mark.asyncio
async def test_button_press_from_unlisted_user_changes_nothing(db, context, telegram, session_factory, events):
    bridge = ChannelBridge(
        telegram, context.gate, session_factory, events,
        allowed_chat_ids=set(), allowed_usernames={"owner"},
    )
    communication = await make_communication(db)
    decision = await make_decision(db, communication)
    press = callback(f"approve:1:{decision.short_id}")
    press["from"]["username"] = "intruder"

    await bridge.process_update({"update_id": 3, "callback_query": press})

    telegram.answer_callback_query.assert_awaited_once_with("cb1", "⛔ Not authorised")
    telegram.edit_message_text.assert_not_awaited()
    await db.refresh(decision)
    assert decision.status == DecisionStatus.PENDING
    assert decision.approved_by is None

    press["from"]["username"] = "Owner"
    assert await bridge.handle_callback(db, press) == "Approved ✅"


@pytest.mark.asyncio
async def test_unknown_callback(db, context, telegram):
    assert await context.bridge.handle_callback(db, callback("explode:1:abc")) == "Unknown action"
    assert await context.bridge.handle_callback(db, callback("approve:1:00000000")) == "Suggestion not found"
    telegram.edit_message_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_short_id_collision_prefers_the_same_chat(db, context):
    here = await make_communication(db, chat_id="4242", source_message_id="1")
    elsewhere = await make_communication(db, chat_id="9999", source_message_id="1")
    mine = await make_decision(db, here, short_id="abcd1234")
    await make_decision(db, elsewhere, short_id="abcd1234")

    resolved = await context.bridge.resolve_decision(db, "abcd1234", "4242")

    assert resolved.id == mine.id


# --- event handlers --------------------------------------------------------

@pytest.mark.asyncio
async def test_approval_request_prompts_chat_when_asked(db, context, telegram):
    context.bridge.subscribe()
    communication = await make_communication(db)
    quiet = await make_decision(db, communication)
    loud = await make_decision(db, communication)

    await context.gate.route_decision(db, quiet, notify_channel=False)
    telegram.send_message.assert_not_awaited()

    await context.gate.route_decision(db, loud, notify_channel=True)
    telegram.send_message.assert_awaited_once()
    chat_id, text = telegram.send_message.await_args.args
    assert chat_id == "4242"
    assert "Approval needed" in text
    context.bridge.unsubscribe()


@pytest.mark.asyncio
async def test_resolution_announced_unless_made_in_chat(db, context, telegram):
    context.bridge.subscribe()
    communication = await make_communication(db)
    from_api = await make_decision(db, communication)
    from_chat = await make_decision(db, communication)

    await context.gate.reject_decision(db, from_chat.id, "telegram:@agent", via="telegram")
    telegram.send_message.assert_not_awaited()

    await context.gate.reject_decision(db, from_api.id, "manager", via="api")
    text = telegram.send_message.await_args.args[1]
    assert "rejected by manager" in text
    context.bridge.unsubscribe()
