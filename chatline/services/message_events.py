"""MessageCreated hook - fans a new message out to the notification pipeline.

Runs as its own unit of work, after the append has committed: a dispatch
failure never affects the persisted message, and rows left ``queued`` are
retried by the reconciliation sweep.
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.core.structured_logging import build_log_context
from chatline.db.models import Conversation, ConversationParticipant, Message, User
from chatline.db.session import SessionLocal
from chatline.schemas.message import content_text, parse_content
from chatline.services.conversation_service import list_active_participants
from chatline.services.message_service import MessageCreated
from chatline.services.notification_dispatch_service import DispatchResult, NotificationDispatcher

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new_message"
MENTION_EVENT = "mention"
PREVIEW_LENGTH = 140


def _notifiable(participant: ConversationParticipant, sender_id) -> bool:
    return (
        participant.user_id != sender_id
        and participant.is_active
        and participant.notification_enabled
        and not participant.is_muted
        and not participant.is_blocked
    )


def find_mentions(text: str, users: list[User]) -> set:
    """Users whose ``@display name`` appears in the text (case-insensitive)."""
    mentioned = set()
    for user in users:
        name = (user.display_name or "").strip()
        if not name:
            continue
        if re.search(rf"@{re.escape(name)}(?!\w)", text, flags=re.IGNORECASE):
            mentioned.add(user.id)
    return mentioned


def notify_message_created(
    db: Session,
    event: MessageCreated,
    dispatcher: NotificationDispatcher,
    *,
    app_ids: list[str] | None = None,
) -> list[DispatchResult]:
    """Dispatch ``new_message`` (and ``mention``) for an appended message."""
    message = db.get(Message, event.message_id)
    if message is None or not message.is_visible:
        return []
    conversation = db.get(Conversation, event.conversation_id)
    if conversation is None or not conversation.is_visible:
        return []

    recipient_ids = [
        p.user_id
        for p in list_active_participants(db, conversation.id)
        if _notifiable(p, event.sender_id)
    ]
    if not recipient_ids:
        return []

    sender = db.get(User, event.sender_id)
    text = content_text(parse_content(message.content))
    recipients = list(db.execute(select(User).where(User.id.in_(recipient_ids))).scalars())
    mentioned = find_mentions(text, recipients)

    context = {
        "sender_name": sender.display_name if sender else "Someone",
        "message_preview": text[:PREVIEW_LENGTH],
        "conversation_id": str(conversation.id),
        "message_id": str(message.id),
        "job_id": str(conversation.job_id) if conversation.job_id else "",
        "job_title": conversation.job_title or "",
    }

    results = []
    for app_id in app_ids or settings.notification_app_ids:
        if mentioned:
            results.append(
                dispatcher.dispatch(
                    db,
                    MENTION_EVENT,
                    app_id,
                    context,
                    [uid for uid in recipient_ids if uid in mentioned],
                    triggered_by=event.sender_id,
                    business_entity_type="message",
                    business_entity_id=str(message.id),
                )
            )
        others = [uid for uid in recipient_ids if uid not in mentioned]
        if others:
            results.append(
                dispatcher.dispatch(
                    db,
                    NEW_MESSAGE_EVENT,
                    app_id,
                    context,
                    others,
                    triggered_by=event.sender_id,
                    business_entity_type="message",
                    business_entity_id=str(message.id),
                )
            )
    return results


def handle_message_created(
    event: MessageCreated,
    dispatcher: NotificationDispatcher,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    app_ids: list[str] | None = None,
) -> list[DispatchResult]:
    """Entry point for producers: opens a fresh session for the dispatch."""
    with session_factory() as db:
        try:
            return notify_message_created(db, event, dispatcher, app_ids=app_ids)
        except Exception:
            logger.exception(
                "Notification fan-out failed for message %s",
                event.message_id,
                extra=build_log_context(
                    conversation_id=event.conversation_id, message_id=event.message_id
                ),
            )
            raise
