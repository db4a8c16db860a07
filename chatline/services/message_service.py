"""Message ledger - messages, edit history, delivery and read state.

Concurrency notes:
- Unread increments and resets are single conditional UPDATEs, so
  concurrent appends and reads never lose an update.
- Delivery status advances by compare-and-set
  (``UPDATE ... WHERE status IN <earlier states>``); a stale caller simply
  matches zero rows, so status never moves backward.
- ``last_message_at`` is recomputed from the visible messages on every
  append and delete, never incremented.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.core.errors import (
    InvalidTransitionError, NotFoundError, NotParticipantError, ValidationError
)
from chatline.core.structured_logging import build_log_context
from chatline.db.enums import ConversationStatus, DeliveryStatus, MessageType
from chatline.db.models import (
    Conversation, ConversationParticipant, Message, MessageVersion
)
from chatline.schemas.message import (
    AttachmentContent, ReplyContent, TextContent, dump_content, parse_content
)
from chatline.services import attachment_service, conversation_service

logger = logging.getLogger(__name__)

TEXT_MESSAGE_TYPES = {MessageType.TEXT, MessageType.EMOJI, MessageType.SYSTEM}
ATTACHMENT_MESSAGE_TYPES = {MessageType.IMAGE, MessageType.FILE, MessageType.AUDIO}


@dataclass(frozen=True)
class MessageCreated:
    """Domain event emitted once per newly persisted message."""
    conversation_id: UUID
    sender_id: UUID
    message_id: UUID


@dataclass
class AppendResult:
    message: Message
    created: bool
    event: MessageCreated | None = None


# =============================================================================
# Payload validation
# =============================================================================


def validate_payload(message_type: MessageType | str, payload):
    """
    Parse and validate a message payload for its message type.

    Raises ValidationError for unknown types, malformed payloads, payloads
    that do not fit the type, or size/count limits.
    """
    try:
        kind = MessageType(message_type)
    except ValueError:
        raise ValidationError(f"Unknown message type '{message_type}'")

    if isinstance(payload, (TextContent, AttachmentContent, ReplyContent)):
        content = payload
    else:
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("Message content is required")
        try:
            content = parse_content(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid message content",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            )

    if kind in TEXT_MESSAGE_TYPES and not isinstance(content, (TextContent, ReplyContent)):
        raise ValidationError(f"{kind.value} messages require text content")
    if isinstance(content, TextContent) and (content.action or content.subject_id):
        raise ValidationError("Roster notice fields are reserved for system messages")
    if kind in ATTACHMENT_MESSAGE_TYPES and not isinstance(content, AttachmentContent):
        raise ValidationError(f"{kind.value} messages require attachments")

    text = content.caption if isinstance(content, AttachmentContent) else content.text
    if text and len(text) > settings.MAX_MESSAGE_TEXT_LENGTH:
        raise ValidationError(
            f"Message text exceeds {settings.MAX_MESSAGE_TEXT_LENGTH} characters"
        )

    if isinstance(content, AttachmentContent):
        if len(content.attachments) > settings.MAX_ATTACHMENTS_PER_MESSAGE:
            raise ValidationError(
                f"Maximum {settings.MAX_ATTACHMENTS_PER_MESSAGE} attachments allowed"
            )
        _check_attachment_types(kind, content)

    return content


def _check_attachment_types(kind: MessageType, content: AttachmentContent) -> None:
    if kind == MessageType.IMAGE and any(
        not ref.content_type.startswith("image/") for ref in content.attachments
    ):
        raise ValidationError("Image messages only accept image attachments")
    if kind == MessageType.AUDIO and any(
        not ref.content_type.startswith("audio/") for ref in content.attachments
    ):
        raise ValidationError("Audio messages only accept audio attachments")


def resolve_attachments(db: Session, message_type: MessageType | str, content, owner_id: UUID):
    """
    Rebuild attachment refs from the stored assets.

    Every referenced asset must exist and belong to ``owner_id``; the ref
    fields a client sent are replaced with the asset's own.
    """
    if not isinstance(content, AttachmentContent):
        return content
    refs = []
    for ref in content.attachments:
        asset = attachment_service.get_attachment(db, ref.media_id)
        if asset is None:
            raise ValidationError(f"Attachment {ref.media_id} not found")
        if asset.owner_id != owner_id:
            raise ValidationError(f"Attachment {ref.media_id} belongs to another user")
        refs.append(attachment_service.to_ref(asset))
    resolved = content.model_copy(update={"attachments": refs})
    _check_attachment_types(MessageType(message_type), resolved)
    return resolved


# =============================================================================
# Derived state
# =============================================================================


def recompute_last_message_at(db: Session, conversation_id: UUID) -> None:
    """Set the conversation cache to the newest visible message time (or NULL)."""
    latest = (
        select(func.max(Message.created_at))
        .where(Message.conversation_id == conversation_id, Message.is_visible)
        .scalar_subquery()
    )
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_message_at=latest),
        execution_options={"synchronize_session": False},
    )


def _increment_unread(db: Session, conversation_id: UUID, sender_id: UUID) -> int:
    """+1 unread for every active participant other than the sender."""
    result = db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id != sender_id,
            ConversationParticipant.is_active,
        )
        .values(unread_count=ConversationParticipant.unread_count + 1),
        execution_options={"synchronize_session": False},
    )
    return result.rowcount


def _reset_unread(db: Session, conversation_id: UUID, reader_id: UUID, read_at: datetime) -> None:
    db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == reader_id,
        )
        .values(unread_count=0, last_read_at=read_at),
        execution_options={"synchronize_session": False},
    )


def _advance_status(db: Session, message_ids: list[UUID], target: DeliveryStatus, *extra) -> int:
    """Compare-and-set status advance; rows already at/after ``target`` are untouched."""
    result = db.execute(
        update(Message)
        .where(
            Message.id.in_(message_ids),
            Message.status.in_(DeliveryStatus.before(target)),
            *extra,
        )
        .values(status=target.value, updated_at=datetime.now(timezone.utc)),
        execution_options={"synchronize_session": False},
    )
    return result.rowcount


# =============================================================================
# Lookups
# =============================================================================


def get_message(db: Session, message_id: UUID) -> Message | None:
    """Get a visible message."""
    return db.execute(
        select(Message).where(Message.id == message_id, Message.is_visible)
    ).scalar_one_or_none()


def require_message(db: Session, message_id: UUID) -> Message:
    message = get_message(db, message_id)
    if not message:
        raise NotFoundError(f"Message {message_id} not found")
    return message


def _find_by_client_temp_id(
    db: Session, conversation_id: UUID, sender_id: UUID, client_temp_id: str
) -> Message | None:
    return db.execute(
        select(Message).where(
            Message.conversation_id == conversation_id,
            Message.sender_id == sender_id,
            Message.client_temp_id == client_temp_id,
        )
    ).scalar_one_or_none()


# =============================================================================
# Append
# =============================================================================


def append(
    db: Session,
    conversation_id: UUID,
    sender_id: UUID,
    message_type: MessageType | str,
    payload,
    client_temp_id: str | None = None,
) -> AppendResult:
    """
    Append a message to a conversation.

    A repeated ``client_temp_id`` from the same sender in the same
    conversation returns the existing message (``created=False``, no event).
    A new message bumps every other active participant's unread count,
    recomputes ``last_message_at`` and yields a ``MessageCreated`` event for
    the caller to hand to the notification pipeline after commit.
    """
    content = validate_payload(message_type, payload)
    kind = MessageType(message_type)
    if kind == MessageType.SYSTEM:
        raise ValidationError("System messages cannot be sent by users")
    client_temp_id = (client_temp_id or "").strip() or None

    conversation = conversation_service.require_conversation(db, conversation_id)
    conversation_service.require_active_participant(db, conversation_id, sender_id)
    content = resolve_attachments(db, kind, content, sender_id)

    if client_temp_id:
        existing = _find_by_client_temp_id(db, conversation_id, sender_id, client_temp_id)
        if existing:
            return AppendResult(message=existing, created=False)

    if conversation.status != ConversationStatus.ACTIVE.value:
        raise ValidationError(f"Conversation is {conversation.status}; messages are not accepted")

    reply_to_id = None
    if isinstance(content, ReplyContent):
        target = get_message(db, content.reply_to)
        if target is None or target.conversation_id != conversation_id:
            raise ValidationError("Reply target must be a message in this conversation")
        reply_to_id = target.id

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        type=kind.value,
        content=dump_content(content),
        reply_to_id=reply_to_id,
        status=DeliveryStatus.SENT.value,
        client_temp_id=client_temp_id,
    )
    db.add(message)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent retry with the same client_temp_id won the insert.
        db.rollback()
        existing = (
            _find_by_client_temp_id(db, conversation_id, sender_id, client_temp_id)
            if client_temp_id
            else None
        )
        if existing is None:
            raise
        return AppendResult(message=existing, created=False)

    _increment_unread(db, conversation_id, sender_id)
    recompute_last_message_at(db, conversation_id)
    db.commit()
    db.refresh(message)

    logger.info(
        "Appended %s message %s to conversation %s",
        kind.value,
        message.id,
        conversation_id,
        extra=build_log_context(
            user_id=sender_id, conversation_id=conversation_id, message_id=message.id
        ),
    )
    return AppendResult(
        message=message,
        created=True,
        event=MessageCreated(
            conversation_id=conversation_id,
            sender_id=sender_id,
            message_id=message.id,
        ),
    )


def record_system_message(
    db: Session,
    conversation_id: UUID,
    actor_id: UUID,
    text: str,
    action: str,
    subject_id: UUID | None = None,
) -> Message:
    """
    Add a roster notice (join, leave, removal) in the caller's transaction.

    The actor may already have left, so membership is not checked. System
    notices do not count toward unread and emit no ``MessageCreated``.
    """
    content = TextContent(text=text, action=action, subject_id=subject_id)
    message = Message(
        conversation_id=conversation_id,
        sender_id=actor_id,
        type=MessageType.SYSTEM.value,
        content=dump_content(content),
        status=DeliveryStatus.SENT.value,
    )
    db.add(message)
    db.flush()
    recompute_last_message_at(db, conversation_id)
    logger.debug("System message %s (%s) in conversation %s", message.id, action, conversation_id)
    return message


# =============================================================================
# Delivery & read receipts
# =============================================================================


def _check_status(message: Message) -> None:
    if message.status not in {s.value for s in DeliveryStatus}:
        raise InvalidTransitionError(
            f"Message {message.id} has not been sent (status={message.status})"
        )


def _require_recipient_standing(db: Session, message: Message, user_id: UUID) -> None:
    if message.conversation_id is None:
        if user_id not in (message.receiver_id, message.sender_id):
            raise NotParticipantError(f"User {user_id} is not a party to message {message.id}")
        return
    conversation_service.require_active_participant(db, message.conversation_id, user_id)


def mark_delivered(db: Session, message_id: UUID, recipient_id: UUID | None = None) -> Message:
    """
    Advance ``sent -> delivered``.

    Already delivered or read messages are left as they are.
    """
    message = require_message(db, message_id)
    _check_status(message)
    if recipient_id is not None:
        _require_recipient_standing(db, message, recipient_id)
        if recipient_id == message.sender_id:
            return message

    if _advance_status(db, [message.id], DeliveryStatus.DELIVERED):
        logger.debug("Message %s delivered", message.id)
    db.commit()
    db.refresh(message)
    return message


def mark_delivered_batch(db: Session, message_ids: list[UUID], recipient_id: UUID) -> int:
    """Mark many messages delivered for one recipient; returns rows advanced."""
    ids = list(dict.fromkeys(message_ids))
    if not ids:
        return 0
    if len(ids) > settings.MAX_RECEIPT_BATCH:
        raise ValidationError(f"At most {settings.MAX_RECEIPT_BATCH} messages per batch")

    member_of = select(ConversationParticipant.conversation_id).where(
        ConversationParticipant.user_id == recipient_id,
        ConversationParticipant.is_active,
    )
    advanced = _advance_status(
        db,
        ids,
        DeliveryStatus.DELIVERED,
        Message.is_visible,
        Message.sender_id != recipient_id,
        (Message.conversation_id.in_(member_of)) | (Message.receiver_id == recipient_id),
    )
    db.commit()
    return advanced


def mark_read(db: Session, message_id: UUID, reader_id: UUID) -> Message:
    """
    Advance the message to ``read`` and reset the reader's unread count.

    Both effects commit together. A sender reading their own message only
    updates their participant row.
    """
    message = require_message(db, message_id)
    _check_status(message)
    _require_recipient_standing(db, message, reader_id)

    now = datetime.now(timezone.utc)
    if reader_id != message.sender_id:
        _advance_status(db, [message.id], DeliveryStatus.READ)
    if message.conversation_id is not None:
        _reset_unread(db, message.conversation_id, reader_id, now)
    db.commit()
    db.refresh(message)

    logger.debug(
        "Message %s read by %s",
        message.id,
        reader_id,
        extra=build_log_context(
            user_id=reader_id, conversation_id=message.conversation_id, message_id=message.id
        ),
    )
    return message


def mark_conversation_read(db: Session, conversation_id: UUID, reader_id: UUID) -> int:
    """Mark every visible message from others as read; returns rows advanced."""
    conversation_service.require_conversation(db, conversation_id)
    conversation_service.require_active_participant(db, conversation_id, reader_id)

    unread_ids = list(
        db.execute(
            select(Message.id).where(
                Message.conversation_id == conversation_id,
                Message.sender_id != reader_id,
                Message.is_visible,
                Message.status.in_(DeliveryStatus.before(DeliveryStatus.READ)),
            )
        ).scalars()
    )
    advanced = 0
    for start in range(0, len(unread_ids), settings.MAX_RECEIPT_BATCH):
        chunk = unread_ids[start:start + settings.MAX_RECEIPT_BATCH]
        advanced += _advance_status(db, chunk, DeliveryStatus.READ)

    _reset_unread(db, conversation_id, reader_id, datetime.now(timezone.utc))
    db.commit()
    return advanced


# =============================================================================
# Edit & delete
# =============================================================================


def edit(db: Session, message_id: UUID, editor_id: UUID, new_payload) -> Message:
    """
    Replace a message payload, snapshotting the previous one first.

    Only the sender may edit, only text/image/file messages, and only inside
    the configured edit window.
    """
    message = db.execute(
        select(Message).where(Message.id == message_id).with_for_update()
    ).scalar_one_or_none()
    if message is None or not message.is_visible:
        raise NotFoundError(f"Message {message_id} not found")
    if message.sender_id != editor_id:
        raise NotParticipantError("Only the sender can edit this message")
    if message.type not in MessageType.editable():
        raise ValidationError(f"{message.type} messages cannot be edited")

    now = datetime.now(timezone.utc)
    window = timedelta(hours=settings.MESSAGE_EDIT_WINDOW_HOURS)
    if now - message.created_at > window:
        raise ValidationError(
            f"Messages can only be edited within {settings.MESSAGE_EDIT_WINDOW_HOURS} hours"
        )

    content = validate_payload(message.type, new_payload)
    content = resolve_attachments(db, message.type, content, editor_id)
    if isinstance(content, ReplyContent) and str(content.reply_to) != str(message.reply_to_id):
        raise ValidationError("The reply target of a message cannot change")

    db.add(
        MessageVersion(
            message_id=message.id,
            version_content=dict(message.content),
            edited_by=editor_id,
            edited_at=now,
        )
    )
    message.content = dump_content(content)
    message.edited_at = now
    db.commit()
    db.refresh(message)

    logger.info("Message %s edited by %s", message.id, editor_id)
    return message


def soft_delete(db: Session, message_id: UUID, actor_id: UUID | None = None) -> Message:
    """
    Tombstone a message and recompute the conversation's ``last_message_at``.

    Participants who had not yet read the message get it taken back off
    their unread count. Deleting twice is a no-op.
    """
    message = db.execute(
        select(Message).where(Message.id == message_id).with_for_update()
    ).scalar_one_or_none()
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    if actor_id is not None and message.sender_id != actor_id:
        raise NotParticipantError("Only the sender can delete this message")
    if message.is_deleted:
        return message

    message.is_deleted = True
    message.deleted_at = datetime.now(timezone.utc)
    db.flush()

    if message.conversation_id is not None:
        db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == message.conversation_id,
                ConversationParticipant.user_id != message.sender_id,
                ConversationParticipant.is_active,
                ConversationParticipant.unread_count > 0,
                ConversationParticipant.joined_at <= message.created_at,
                (ConversationParticipant.last_read_at.is_(None))
                | (ConversationParticipant.last_read_at < message.created_at),
            )
            .values(unread_count=ConversationParticipant.unread_count - 1),
            execution_options={"synchronize_session": False},
        )
        recompute_last_message_at(db, message.conversation_id)

    db.commit()
    db.refresh(message)
    logger.info("Soft-deleted message %s", message.id)
    return message


# =============================================================================
# Reads
# =============================================================================


def list_recent(
    db: Session,
    conversation_id: UUID,
    limit: int = 50,
    *,
    viewer_id: UUID | None = None,
    before: datetime | None = None,
) -> list[Message]:
    """Visible messages newest-first, capped at ``limit``."""
    if viewer_id is not None:
        if conversation_service.get_participant(db, conversation_id, viewer_id) is None:
            raise NotParticipantError(
                f"User {viewer_id} is not a participant of conversation {conversation_id}"
            )
    if limit <= 0:
        return []

    query = select(Message).where(
        Message.conversation_id == conversation_id,
        Message.is_visible,
    )
    if before is not None:
        query = query.where(Message.created_at < before)
    query = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
    return list(db.execute(query).scalars())


def list_versions(db: Session, message_id: UUID) -> list[MessageVersion]:
    """Edit history of a message, oldest first."""
    message = db.get(Message, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    return list(
        db.execute(
            select(MessageVersion)
            .where(MessageVersion.message_id == message_id)
            .order_by(MessageVersion.edited_at, MessageVersion.id)
        ).scalars()
    )
