"""Tests for the message ledger: append, receipts, unread counts, edit and delete."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from chatline.core.errors import NotFoundError, NotParticipantError, ValidationError
from chatline.db.enums import DeliveryStatus, MessageType
from chatline.db.models import Conversation, Message
from chatline.services import conversation_service, message_service


def _text(text: str) -> dict:
    return {"kind": "text", "text": text}


def _attachment(content_type: str = "image/png") -> dict:
    return {
        "kind": "attachment",
        "attachments": [
            {
                "media_id": str(uuid.uuid4()),
                "storage_key": "attachments/x/photo.png",
                "filename": "photo.png",
                "content_type": content_type,
                "size": 1024,
            }
        ],
    }


@pytest.fixture
def direct(db, alice, bob):
    return conversation_service.find_or_create_direct(db, alice.id, bob.id)


def _participant(db, conversation_id, user_id):
    db.expire_all()
    return conversation_service.get_participant(db, conversation_id, user_id)


def _last_message_at(db, conversation_id):
    db.expire_all()
    return db.get(Conversation, conversation_id).last_message_at


# =============================================================================
# Payload validation
# =============================================================================


def test_validate_payload_accepts_variants():
    assert message_service.validate_payload("text", _text("hello")).text == "hello"
    assert message_service.validate_payload(MessageType.IMAGE, _attachment()).attachments


@pytest.mark.parametrize(
    "message_type,payload",
    [
        ("text", {}),
        ("text", {"kind": "text", "text": "   "}),
        ("text", {"kind": "bogus", "text": "x"}),
        ("bogus", {"kind": "text", "text": "x"}),
        ("image", {"kind": "text", "text": "not an image"}),
        ("text", _attachment()),
        ("image", _attachment("application/pdf")),
        ("audio", _attachment("image/png")),
    ],
)
def test_validate_payload_rejects_malformed(message_type, payload):
    with pytest.raises(ValidationError):
        message_service.validate_payload(message_type, payload)


def test_validate_payload_enforces_limits(monkeypatch):
    monkeypatch.setattr(message_service.settings, "MAX_MESSAGE_TEXT_LENGTH", 5)
    with pytest.raises(ValidationError):
        message_service.validate_payload("text", _text("too long"))

    monkeypatch.setattr(message_service.settings, "MAX_ATTACHMENTS_PER_MESSAGE", 1)
    payload = _attachment()
    payload["attachments"] = payload["attachments"] * 2
    with pytest.raises(ValidationError):
        message_service.validate_payload("image", payload)


def test_append_rejects_before_any_write(db, direct, alice):
    with pytest.raises(ValidationError):
        message_service.append(db, direct.id, alice.id, "text", {"kind": "text", "text": ""})
    assert db.execute(select(func.count(Message.id))).scalar_one() == 0


# =============================================================================
# Append
# =============================================================================


def test_append_returns_event_and_bumps_unread(db, direct, alice, bob):
    result = message_service.append(db, direct.id, alice.id, "text", _text("hi"))

    assert result.created is True
    assert result.event == message_service.MessageCreated(
        conversation_id=direct.id, sender_id=alice.id, message_id=result.message.id
    )
    assert result.message.status == DeliveryStatus.SENT.value
    assert _participant(db, direct.id, bob.id).unread_count == 1
    assert _participant(db, direct.id, alice.id).unread_count == 0


def test_append_requires_active_participant(db, direct, carol):
    with pytest.raises(NotParticipantError):
        message_service.append(db, direct.id, carol.id, "text", _text("hi"))


def test_append_to_closed_conversation_rejected(db, direct, alice):
    conversation_service.close(db, direct.id)
    with pytest.raises(ValidationError):
        message_service.append(db, direct.id, alice.id, "text", _text("hi"))


def test_append_idempotent_client_temp_id(db, direct, alice, bob):
    first = message_service.append(db, direct.id, alice.id, "text", _text("hi"), client_temp_id="tmp-1")
    second = message_service.append(db, direct.id, alice.id, "text", _text("hi"), client_temp_id="tmp-1")

    assert second.created is False
    assert second.event is None
    assert second.message.id == first.message.id
    assert db.execute(select(func.count(Message.id))).scalar_one() == 1
    assert _participant(db, direct.id, bob.id).unread_count == 1


def test_same_client_temp_id_from_other_sender_is_distinct(db, direct, alice, bob):
    message_service.append(db, direct.id, alice.id, "text", _text("hi"), client_temp_id="tmp-1")
    other = message_service.append(db, direct.id, bob.id, "text", _text("hey"), client_temp_id="tmp-1")
    assert other.created is True
    assert db.execute(select(func.count(Message.id))).scalar_one() == 2


def test_reply_must_target_same_conversation(db, direct, alice, bob, carol):
    original = message_service.append(db, direct.id, alice.id, "text", _text("question")).message
    reply = message_service.append(
        db, direct.id, bob.id, "text",
        {"kind": "reply", "reply_to": str(original.id), "text": "answer"},
    ).message
    assert reply.reply_to_id == original.id

    elsewhere = conversation_service.find_or_create_direct(db, alice.id, carol.id)
    with pytest.raises(ValidationError):
        message_service.append(
            db, elsewhere.id, alice.id, "text",
            {"kind": "reply", "reply_to": str(original.id), "text": "wrong place"},
        )


# =============================================================================
# Unread counts & receipts
# =============================================================================


def test_unread_scenario_three_then_read_then_one(db, direct, alice, bob):
    messages = [
        message_service.append(db, direct.id, alice.id, "text", _text(f"m{i}")).message
        for i in range(3)
    ]
    assert _participant(db, direct.id, bob.id).unread_count == 3

    message_service.mark_read(db, messages[-1].id, bob.id)
    participant = _participant(db, direct.id, bob.id)
    assert participant.unread_count == 0
    assert participant.last_read_at is not None

    message_service.append(db, direct.id, alice.id, "text", _text("m4"))
    assert _participant(db, direct.id, bob.id).unread_count == 1


def test_unread_skips_participants_who_left(db, alice, bob, carol):
    conversation = conversation_service.create_job_conversation(
        db, alice.id, uuid.uuid4(), "Job", [bob.id, carol.id]
    )
    conversation_service.remove_participant(db, conversation.id, carol.id)

    message_service.append(db, conversation.id, alice.id, "text", _text("hi"))
    assert _participant(db, conversation.id, bob.id).unread_count == 1
    assert _participant(db, conversation.id, carol.id).unread_count == 0


def test_delivery_status_is_monotonic(db, direct, alice, bob):
    message = message_service.append(db, direct.id, alice.id, "text", _text("hi")).message

    assert message_service.mark_delivered(db, message.id, bob.id).status == DeliveryStatus.DELIVERED.value
    assert message_service.mark_read(db, message.id, bob.id).status == DeliveryStatus.READ.value

    # A late delivery receipt must not move it back
    assert message_service.mark_delivered(db, message.id, bob.id).status == DeliveryStatus.READ.value
    assert message_service.mark_delivered_batch(db, [message.id], bob.id) == 0
    db.expire_all()
    assert db.get(Message, message.id).status == DeliveryStatus.READ.value


def test_sent_can_skip_straight_to_read(db, direct, alice, bob):
    message = message_service.append(db, direct.id, alice.id, "text", _text("hi")).message
    assert message_service.mark_read(db, message.id, bob.id).status == DeliveryStatus.READ.value


def test_sender_reading_own_message_keeps_status(db, direct, alice):
    message = message_service.append(db, direct.id, alice.id, "text", _text("hi")).message
    assert message_service.mark_read(db, message.id, alice.id).status == DeliveryStatus.SENT.value
    assert message_service.mark_delivered(db, message.id, alice.id).status == DeliveryStatus.SENT.value


def test_receipts_require_participant(db, direct, alice, carol):
    message = message_service.append(db, direct.id, alice.id, "text", _text("hi")).message
    with pytest.raises(NotParticipantError):
        message_service.mark_read(db, message.id, carol.id)
    with pytest.raises(NotFoundError):
        message_service.mark_delivered(db, uuid.uuid4(), carol.id)


def test_mark_delivered_batch_only_touches_recipient_messages(db, direct, alice, bob, carol):
    to_bob = [
        message_service.append(db, direct.id, alice.id, "text", _text(f"m{i}")).message.id
        for i in range(2)
    ]
    own = message_service.append(db, direct.id, bob.id, "text", _text("mine")).message.id
    other = conversation_service.find_or_create_direct(db, alice.id, carol.id)
    foreign = message_service.append(db, other.id, alice.id, "text", _text("not bob's")).message.id

    assert message_service.mark_delivered_batch(db, to_bob + [own, foreign], bob.id) == 2
    db.expire_all()
    assert db.get(Message, own).status == DeliveryStatus.SENT.value
    assert db.get(Message, foreign).status == DeliveryStatus.SENT.value


def test_mark_delivered_batch_limit(db, bob, monkeypatch):
    monkeypatch.setattr(message_service.settings, "MAX_RECEIPT_BATCH", 2)
    with pytest.raises(ValidationError):
        message_service.mark_delivered_batch(db, [uuid.uuid4() for _ in range(3)], bob.id)


def test_mark_conversation_read(db, direct, alice, bob):
    for i in range(3):
        message_service.append(db, direct.id, alice.id, "text", _text(f"m{i}"))
    message_service.append(db, direct.id, bob.id, "text", _text("reply"))

    assert message_service.mark_conversation_read(db, direct.id, bob.id) == 3
    assert _participant(db, direct.id, bob.id).unread_count == 0
    statuses = {
        m.sender_id: m.status for m in message_service.list_recent(db, direct.id)
    }
    assert statuses[alice.id] == DeliveryStatus.READ.value
    assert statuses[bob.id] == DeliveryStatus.SENT.value


# =============================================================================
# last_message_at
# =============================================================================


def test_last_message_at_tracks_latest_visible_message(db, direct, alice, bob):
    assert _last_message_at(db, direct.id) is None

    first = message_service.append(db, direct.id, alice.id, "text", _text("one")).message
    second = message_service.append(db, direct.id, bob.id, "text", _text("two")).message
    assert _last_message_at(db, direct.id) == second.created_at

    message_service.soft_delete(db, second.id, bob.id)
    assert _last_message_at(db, direct.id) == first.created_at

    third = message_service.append(db, direct.id, alice.id, "text", _text("three")).message
    assert _last_message_at(db, direct.id) == third.created_at

    message_service.soft_delete(db, first.id, alice.id)
    assert _last_message_at(db, direct.id) == third.created_at

    message_service.soft_delete(db, third.id, alice.id)
    assert _last_message_at(db, direct.id) is None


# =============================================================================
# Edit & delete
# =============================================================================


def test_edit_snapshots_previous_content(db, direct, alice):
    message = message_service.append(db, direct.id, alice.id, "text", _text("draft")).message

    message_service.edit(db, message.id, alice.id, _text("final"))
    edited = message_service.edit(db, message.id, alice.id, _text("final final"))

    assert edited.content["text"] == "final final"
    assert edited.edited_at is not None
    versions = message_service.list_versions(db, message.id)
    assert [v.version_content["text"] for v in versions] == ["draft", "final"]
    assert all(v.edited_by == alice.id for v in versions)


def test_edit_rules(db, direct, alice, bob):
    message = message_service.append(db, direct.id, alice.id, "text", _text("hi")).message
    with pytest.raises(NotParticipantError):
        message_service.edit(db, message.id, bob.id, _text("hijacked"))

    emoji = message_service.append(db, direct.id, alice.id, "emoji", _text(":)")).message
    with pytest.raises(ValidationError):
        message_service.edit(db, emoji.id, alice.id, _text(":("))

    old = datetime.now(timezone.utc) - timedelta(hours=25)
    db.execute(update(Message).where(Message.id == message.id).values(created_at=old))
    db.commit()
    with pytest.raises(ValidationError):
        message_service.edit(db, message.id, alice.id, _text("too late"))


def test_soft_delete_hides_message_and_fixes_unread(db, direct, alice, bob):
    message_service.append(db, direct.id, alice.id, "text", _text("one"))
    second = message_service.append(db, direct.id, alice.id, "text", _text("two")).message
    assert _participant(db, direct.id, bob.id).unread_count == 2

    with pytest.raises(NotParticipantError):
        message_service.soft_delete(db, second.id, bob.id)

    message_service.soft_delete(db, second.id, alice.id)
    message_service.soft_delete(db, second.id, alice.id)

    assert _participant(db, direct.id, bob.id).unread_count == 1
    assert message_service.get_message(db, second.id) is None
    assert [m.content["text"] for m in message_service.list_recent(db, direct.id)] == ["one"]


def test_soft_delete_after_read_keeps_unread_at_zero(db, direct, alice, bob):
    message = message_service.append(db, direct.id, alice.id, "text", _text("one")).message
    message_service.mark_read(db, message.id, bob.id)
    message_service.soft_delete(db, message.id, alice.id)
    assert _participant(db, direct.id, bob.id).unread_count == 0


# =============================================================================
# Reads
# =============================================================================


def test_list_recent_newest_first_with_limit(db, direct, alice, carol):
    for i in range(5):
        message_service.append(db, direct.id, alice.id, "text", _text(f"m{i}"))

    recent = message_service.list_recent(db, direct.id, 3)
    assert [m.content["text"] for m in recent] == ["m4", "m3", "m2"]

    older = message_service.list_recent(db, direct.id, 10, before=recent[-1].created_at)
    assert [m.content["text"] for m in older] == ["m1", "m0"]

    assert message_service.list_recent(db, direct.id, 0) == []
    with pytest.raises(NotParticipantError):
        message_service.list_recent(db, direct.id, viewer_id=carol.id)
