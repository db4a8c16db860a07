"""Conversation store - conversations, participant roster and per-user settings.

Participant rows are the source of truth for membership; the
``Conversation.participant_ids`` array is re-derived from them whenever the
roster changes and is never written independently.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatline.core.errors import (
    ConflictRaceError, InvalidTransitionError, NotFoundError, NotParticipantError,
    ValidationError,
)
from chatline.db.enums import ConversationStatus, ConversationType
from chatline.db.models import Conversation, ConversationParticipant, User

logger = logging.getLogger(__name__)


# Allowed status transitions (repeats are no-ops, handled separately)
STATUS_TRANSITIONS: dict[ConversationStatus, set[ConversationStatus]] = {
    ConversationStatus.ACTIVE: {ConversationStatus.CLOSED, ConversationStatus.ARCHIVED},
    ConversationStatus.CLOSED: {ConversationStatus.ACTIVE, ConversationStatus.ARCHIVED},
    ConversationStatus.ARCHIVED: set(),
}

DIRECT_PARTICIPANT_COUNT = 2


def direct_pair_key(user_a: UUID, user_b: UUID) -> str:
    """Normalized key for an unordered user pair."""
    low, high = sorted([str(user_a), str(user_b)])
    return f"{low}:{high}"


# =============================================================================
# Lookups
# =============================================================================


def get_conversation(db: Session, conversation_id: UUID) -> Conversation | None:
    """Get a visible (not soft-deleted) conversation."""
    return db.execute(
        select(Conversation).where(
            Conversation.id == conversation_id,
            Conversation.is_visible,
        )
    ).scalar_one_or_none()


def require_conversation(db: Session, conversation_id: UUID, *, for_update: bool = False) -> Conversation:
    query = select(Conversation).where(
        Conversation.id == conversation_id,
        Conversation.is_visible,
    )
    if for_update:
        query = query.with_for_update()
    conversation = db.execute(query).scalar_one_or_none()
    if not conversation:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def get_participant(
    db: Session,
    conversation_id: UUID,
    user_id: UUID,
    *,
    for_update: bool = False,
) -> ConversationParticipant | None:
    query = select(ConversationParticipant).where(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    )
    if for_update:
        query = query.with_for_update()
    return db.execute(query).scalar_one_or_none()


def require_active_participant(
    db: Session,
    conversation_id: UUID,
    user_id: UUID,
    *,
    for_update: bool = False,
) -> ConversationParticipant:
    """Return the caller's participant row or raise NotParticipantError."""
    participant = get_participant(db, conversation_id, user_id, for_update=for_update)
    if participant is None or not participant.is_active:
        raise NotParticipantError(
            f"User {user_id} is not a participant of conversation {conversation_id}"
        )
    return participant


def list_active_participants(db: Session, conversation_id: UUID) -> list[ConversationParticipant]:
    return list(
        db.execute(
            select(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.is_active,
            )
            .order_by(ConversationParticipant.joined_at, ConversationParticipant.created_at)
        ).scalars()
    )


def _sync_participant_ids(db: Session, conversation: Conversation) -> None:
    """Re-derive the denormalized participant array from the active rows."""
    db.flush()
    conversation.participant_ids = [
        str(p.user_id) for p in list_active_participants(db, conversation.id)
    ]


def _display_name(db: Session, user_id: UUID) -> str:
    user = db.get(User, user_id)
    return user.display_name if user and user.display_name else "Unknown user"


def _post_roster_notice(
    db: Session, conversation_id: UUID, actor_id: UUID, text: str, action: str, subject_id: UUID
) -> None:
    from chatline.services import message_service

    message_service.record_system_message(
        db, conversation_id, actor_id, text, action, subject_id=subject_id
    )


def _require_users(db: Session, user_ids: list[UUID]) -> None:
    found = set(
        db.execute(select(User.id).where(User.id.in_(user_ids))).scalars()
    )
    missing = [str(u) for u in user_ids if u not in found]
    if missing:
        raise NotFoundError(f"Users not found: {', '.join(missing)}")


# =============================================================================
# Creation
# =============================================================================


def _get_by_pair_key(db: Session, key: str) -> Conversation | None:
    return db.execute(
        select(Conversation).where(Conversation.direct_pair_key == key)
    ).scalar_one_or_none()


def find_or_create_direct(db: Session, user_a: UUID, user_b: UUID) -> Conversation:
    """
    Return the direct conversation for an unordered user pair, creating it once.

    Concurrent callers for the same pair converge on one row: the unique
    ``direct_pair_key`` rejects the losing insert, which then re-queries and
    returns the winner. A closed pair conversation is reopened and a pair
    member who left is re-added; archived or deleted ones release their key
    so a fresh conversation is created.
    """
    if user_a == user_b:
        raise ValidationError("A direct conversation needs two distinct users")
    _require_users(db, [user_a, user_b])

    key = direct_pair_key(user_a, user_b)
    existing = _get_by_pair_key(db, key)
    if existing:
        for user_id in (user_a, user_b):
            participant = get_participant(db, existing.id, user_id)
            if participant is not None and not participant.is_active:
                add_participant(db, existing.id, user_id, actor_id=user_a)
        if existing.status == ConversationStatus.CLOSED.value:
            return reopen(db, existing.id)
        db.refresh(existing)
        return existing

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        type=ConversationType.DIRECT_MESSAGE.value,
        direct_pair_key=key,
        status=ConversationStatus.ACTIVE.value,
        created_by=user_a,
    )
    conversation.participants = [
        ConversationParticipant(user_id=user_a, joined_at=now),
        ConversationParticipant(user_id=user_b, joined_at=now),
    ]
    conversation.participant_ids = [str(user_a), str(user_b)]
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Another caller created the pair first; return theirs.
        db.rollback()
        winner = _get_by_pair_key(db, key)
        if winner is None:
            raise ConflictRaceError(
                f"Direct conversation for {key} could not be created or found"
            )
        logger.info("Direct conversation race for %s resolved to %s", key, winner.id)
        return winner

    db.refresh(conversation)
    logger.info("Created direct conversation %s for pair %s", conversation.id, key)
    return conversation


def create_job_conversation(
    db: Session,
    creator_id: UUID,
    job_id: UUID | None,
    job_title: str | None,
    participant_ids: list[UUID],
) -> Conversation:
    """Create a job-scoped conversation. The creator is always a participant."""
    if job_id is None:
        raise ValidationError("Job conversations require a job reference")

    members: list[UUID] = [creator_id]
    for user_id in participant_ids:
        if user_id not in members:
            members.append(user_id)
    _require_users(db, members)

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        type=ConversationType.JOB_CHAT.value,
        job_id=job_id,
        job_title=(job_title or "").strip() or None,
        status=ConversationStatus.ACTIVE.value,
        created_by=creator_id,
    )
    conversation.participants = [
        ConversationParticipant(user_id=user_id, joined_at=now) for user_id in members
    ]
    conversation.participant_ids = [str(user_id) for user_id in members]
    db.add(conversation)
    db.commit()
    db.refresh(conversation)

    logger.info(
        "Created job conversation %s for job %s with %s participants",
        conversation.id,
        job_id,
        len(members),
    )
    return conversation


def list_job_conversations(db: Session, job_id: UUID) -> list[Conversation]:
    return list(
        db.execute(
            select(Conversation).where(
                Conversation.job_id == job_id,
                Conversation.type == ConversationType.JOB_CHAT.value,
                Conversation.is_visible,
            )
        ).scalars()
    )


# =============================================================================
# Roster
# =============================================================================


def add_participant(
    db: Session,
    conversation_id: UUID,
    user_id: UUID,
    actor_id: UUID | None = None,
) -> ConversationParticipant:
    """
    Add a user to a conversation and post a system notice.

    Re-adding a participant who left clears ``left_at`` and resets their
    unread count; adding an active participant is a no-op.
    """
    conversation = require_conversation(db, conversation_id, for_update=True)
    _require_users(db, [user_id])

    participant = get_participant(db, conversation_id, user_id, for_update=True)
    if participant and participant.is_active:
        return participant

    if conversation.type == ConversationType.DIRECT_MESSAGE.value:
        allowed = {UUID(u) for u in (conversation.direct_pair_key or "").split(":") if u}
        if user_id not in allowed:
            raise ValidationError("Direct conversations have exactly two participants")

    now = datetime.now(timezone.utc)
    if participant:
        participant.left_at = None
        participant.unread_count = 0
        participant.joined_at = now
    else:
        participant = ConversationParticipant(
            conversation_id=conversation_id,
            user_id=user_id,
            joined_at=now,
        )
        db.add(participant)

    _sync_participant_ids(db, conversation)
    actor_id = actor_id or user_id
    if actor_id == user_id:
        text = f"{_display_name(db, user_id)} joined the conversation"
    else:
        text = f"{_display_name(db, actor_id)} added {_display_name(db, user_id)} to the conversation"
    _post_roster_notice(db, conversation_id, actor_id, text, "add_participant", user_id)
    db.commit()
    db.refresh(participant)
    logger.info("Added user %s to conversation %s", user_id, conversation_id)
    return participant


def remove_participant(
    db: Session,
    conversation_id: UUID,
    user_id: UUID,
    actor_id: UUID | None = None,
) -> ConversationParticipant:
    """
    Mark a participant as left and post a system notice.

    Leaving twice is a no-op. The last active participant cannot leave.
    """
    conversation = require_conversation(db, conversation_id, for_update=True)
    participant = get_participant(db, conversation_id, user_id, for_update=True)
    if participant is None:
        raise NotParticipantError(
            f"User {user_id} is not a participant of conversation {conversation_id}"
        )
    if not participant.is_active:
        return participant

    others = [p for p in list_active_participants(db, conversation_id) if p.user_id != user_id]
    if not others:
        raise ValidationError(
            "Cannot remove the last participant from a conversation", code="LAST_PARTICIPANT"
        )

    participant.left_at = datetime.now(timezone.utc)
    actor_id = actor_id or user_id
    if actor_id == user_id:
        text = f"{_display_name(db, user_id)} left the conversation"
        action = "leave_conversation"
    else:
        text = f"{_display_name(db, actor_id)} removed {_display_name(db, user_id)} from the conversation"
        action = "remove_participant"
    _post_roster_notice(db, conversation_id, actor_id, text, action, user_id)
    _sync_participant_ids(db, conversation)
    db.commit()
    db.refresh(participant)
    logger.info("Removed user %s from conversation %s", user_id, conversation_id)
    return participant


def update_settings(
    db: Session,
    conversation_id: UUID,
    user_id: UUID,
    *,
    muted: bool | None = None,
    pinned: bool | None = None,
    notification_enabled: bool | None = None,
    blocked: bool | None = None,
) -> ConversationParticipant:
    """Partial update of a participant's settings; ``None`` leaves a field unchanged."""
    require_conversation(db, conversation_id)
    participant = require_active_participant(db, conversation_id, user_id, for_update=True)

    if muted is not None:
        participant.is_muted = muted
    if pinned is not None:
        participant.is_pinned = pinned
    if notification_enabled is not None:
        participant.notification_enabled = notification_enabled
    if blocked is not None:
        participant.is_blocked = blocked

    db.commit()
    db.refresh(participant)
    return participant


# =============================================================================
# Status transitions
# =============================================================================


def _transition(db: Session, conversation_id: UUID, target: ConversationStatus) -> Conversation:
    conversation = require_conversation(db, conversation_id, for_update=True)
    current = ConversationStatus(conversation.status)
    if current == target:
        return conversation
    if target not in STATUS_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move conversation from {current.value} to {target.value}"
        )

    now = datetime.now(timezone.utc)
    conversation.status = target.value
    if target == ConversationStatus.CLOSED:
        conversation.closed_at = now
    elif target == ConversationStatus.ARCHIVED:
        conversation.archived_at = now
        # Archived is terminal; let the pair start a fresh conversation.
        conversation.direct_pair_key = None
    elif target == ConversationStatus.ACTIVE:
        conversation.closed_at = None

    db.commit()
    db.refresh(conversation)
    logger.info(
        "Conversation %s moved %s -> %s", conversation_id, current.value, target.value
    )
    return conversation


def close(db: Session, conversation_id: UUID) -> Conversation:
    return _transition(db, conversation_id, ConversationStatus.CLOSED)


def archive(db: Session, conversation_id: UUID) -> Conversation:
    return _transition(db, conversation_id, ConversationStatus.ARCHIVED)


def reopen(db: Session, conversation_id: UUID) -> Conversation:
    return _transition(db, conversation_id, ConversationStatus.ACTIVE)


def soft_delete(db: Session, conversation_id: UUID) -> Conversation:
    """Tombstone a conversation. Deleting twice is a no-op."""
    conversation = db.execute(
        select(Conversation).where(Conversation.id == conversation_id).with_for_update()
    ).scalar_one_or_none()
    if not conversation:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    if conversation.is_deleted:
        return conversation

    conversation.is_deleted = True
    conversation.deleted_at = datetime.now(timezone.utc)
    conversation.direct_pair_key = None
    db.commit()
    db.refresh(conversation)
    logger.info("Soft-deleted conversation %s", conversation_id)
    return conversation


# =============================================================================
# Listing
# =============================================================================


def list_by_participant(
    db: Session,
    user_id: UUID,
    *,
    status: ConversationStatus | None = None,
    conversation_type: ConversationType | None = None,
    pinned_only: bool = False,
    limit: int = 50,
) -> list[tuple[Conversation, ConversationParticipant]]:
    """
    Conversations where the user is an active participant.

    Ordered by ``last_message_at`` descending; conversations without messages
    sort last (newest created first among them).
    """
    query = (
        select(Conversation, ConversationParticipant)
        .join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Conversation.id,
        )
        .where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active,
            Conversation.is_visible,
        )
    )
    if status is not None:
        query = query.where(Conversation.status == status.value)
    if conversation_type is not None:
        query = query.where(Conversation.type == conversation_type.value)
    if pinned_only:
        query = query.where(ConversationParticipant.is_pinned.is_(True))

    query = query.order_by(
        Conversation.last_message_at.is_(None),
        Conversation.last_message_at.desc(),
        Conversation.created_at.desc(),
    ).limit(limit)
    return [(row[0], row[1]) for row in db.execute(query).all()]


def unread_counts(db: Session, user_id: UUID) -> dict[UUID, int]:
    """Non-zero unread counts per visible conversation for a user."""
    rows = db.execute(
        select(ConversationParticipant.conversation_id, ConversationParticipant.unread_count)
        .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
        .where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active,
            ConversationParticipant.unread_count > 0,
            Conversation.is_visible,
        )
    ).all()
    return {conversation_id: count for conversation_id, count in rows}
