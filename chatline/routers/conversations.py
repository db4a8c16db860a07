"""
Conversations Router - /conversations endpoints.

Direct and job conversations, roster changes, per-participant settings and
lifecycle transitions. Every endpoint requires the caller to be a participant.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from chatline.core.deps import get_current_user, get_db
from chatline.core.errors import ForbiddenError
from chatline.db.enums import ConversationStatus, ConversationType, Role
from chatline.db.models import Conversation, User
from chatline.schemas.conversation import (
    ConversationListItem,
    ConversationListResponse,
    ConversationRead,
    DirectConversationCreate,
    JobConversationCreate,
    ParticipantAdd,
    ParticipantRead,
    ParticipantSettingsUpdate,
    UnreadCountsResponse,
)
from chatline.services import conversation_service


router = APIRouter()


def _member_conversation(db: Session, conversation_id: UUID, user: User) -> Conversation:
    conversation = conversation_service.require_conversation(db, conversation_id)
    conversation_service.require_active_participant(db, conversation_id, user.id)
    return conversation


def _require_owner(conversation: Conversation, user: User) -> None:
    if conversation.created_by != user.id and user.role != Role.ADMINISTRATOR.value:
        raise ForbiddenError("Only the conversation creator can do this")


# =============================================================================
# Create & list
# =============================================================================


@router.post("/direct", response_model=ConversationRead)
def open_direct_conversation(
    data: DirectConversationCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Find or create the caller's direct conversation with another user."""
    return conversation_service.find_or_create_direct(db, user.id, data.user_id)


@router.post("/job", response_model=ConversationRead, status_code=201)
def create_job_conversation(
    data: JobConversationCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return conversation_service.create_job_conversation(
        db, user.id, data.job_id, data.job_title, data.participant_ids
    )


@router.get("", response_model=ConversationListResponse)
def list_conversations(
    status: ConversationStatus | None = Query(None),
    conversation_type: ConversationType | None = Query(None, alias="type"),
    pinned_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Caller's conversations, most recent activity first."""
    rows = conversation_service.list_by_participant(
        db,
        user.id,
        status=status,
        conversation_type=conversation_type,
        pinned_only=pinned_only,
        limit=limit,
    )
    return ConversationListResponse(
        items=[
            ConversationListItem(
                conversation=ConversationRead.model_validate(conversation),
                settings=ParticipantRead.model_validate(participant),
            )
            for conversation, participant in rows
        ]
    )


@router.get("/unread", response_model=UnreadCountsResponse)
def get_unread_counts(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Unread counts per conversation (for polling)."""
    counts = conversation_service.unread_counts(db, user.id)
    return UnreadCountsResponse(counts=counts, total=sum(counts.values()))


@router.get("/{conversation_id}", response_model=ConversationRead)
def get_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _member_conversation(db, conversation_id, user)


# =============================================================================
# Roster & settings
# =============================================================================


@router.get("/{conversation_id}/participants", response_model=list[ParticipantRead])
def list_participants(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _member_conversation(db, conversation_id, user)
    return conversation_service.list_active_participants(db, conversation_id)


@router.post("/{conversation_id}/participants", response_model=ParticipantRead)
def add_participant(
    conversation_id: UUID,
    data: ParticipantAdd,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _member_conversation(db, conversation_id, user)
    return conversation_service.add_participant(db, conversation_id, data.user_id, actor_id=user.id)


@router.delete("/{conversation_id}/participants/{user_id}", response_model=ParticipantRead)
def remove_participant(
    conversation_id: UUID,
    user_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Leave a conversation, or (creator only) remove someone else."""
    conversation = _member_conversation(db, conversation_id, user)
    if user_id != user.id:
        _require_owner(conversation, user)
    return conversation_service.remove_participant(db, conversation_id, user_id, actor_id=user.id)


@router.patch("/{conversation_id}/settings", response_model=ParticipantRead)
def update_settings(
    conversation_id: UUID,
    data: ParticipantSettingsUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return conversation_service.update_settings(
        db,
        conversation_id,
        user.id,
        muted=data.muted,
        pinned=data.pinned,
        notification_enabled=data.notification_enabled,
        blocked=data.blocked,
    )


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/{conversation_id}/close", response_model=ConversationRead)
def close_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _member_conversation(db, conversation_id, user)
    return conversation_service.close(db, conversation_id)


@router.post("/{conversation_id}/reopen", response_model=ConversationRead)
def reopen_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _member_conversation(db, conversation_id, user)
    return conversation_service.reopen(db, conversation_id)


@router.post("/{conversation_id}/archive", response_model=ConversationRead)
def archive_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_owner(_member_conversation(db, conversation_id, user), user)
    return conversation_service.archive(db, conversation_id)


@router.delete("/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _require_owner(_member_conversation(db, conversation_id, user), user)
    conversation_service.soft_delete(db, conversation_id)
