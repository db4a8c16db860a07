"""
Messages Router - message ledger endpoints.

Mixed paths: /conversations/{id}/messages for sending and history,
/messages/{id} for receipts, edits and deletion.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from chatline.core.deps import get_current_user, get_db, get_dispatcher
from chatline.core.rate_limit import MESSAGE_LIMIT, limiter, messages_unlimited
from chatline.db.models import User
from chatline.schemas.message import (
    MessageCreate,
    MessageEdit,
    MessageListResponse,
    MessageRead,
    MessageVersionRead,
    ReceiptBatch,
)
from chatline.services import conversation_service, message_service
from chatline.services.message_events import handle_message_created
from chatline.services.notification_dispatch_service import NotificationDispatcher


router = APIRouter()


def _require_party(db: Session, message_id: UUID, user: User) -> None:
    message = message_service.require_message(db, message_id)
    if message.conversation_id is not None:
        conversation_service.require_active_participant(db, message.conversation_id, user.id)


# =============================================================================
# Conversation history
# =============================================================================


@router.post("/conversations/{conversation_id}/messages", response_model=MessageRead, status_code=201)
@limiter.limit(MESSAGE_LIMIT, exempt_when=messages_unlimited)
def send_message(
    request: Request,
    response: Response,
    conversation_id: UUID,
    data: MessageCreate,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Send a message.

    Retrying with the same ``client_temp_id`` returns the original message
    with status 200; notifications go out only for the first send.
    """
    result = message_service.append(
        db,
        conversation_id,
        user.id,
        data.type,
        data.content,
        client_temp_id=data.client_temp_id,
    )
    if result.created and result.event is not None:
        background_tasks.add_task(handle_message_created, result.event, dispatcher)
    else:
        response.status_code = 200
    return result.message


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
def list_messages(
    conversation_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    before: datetime | None = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Newest messages first; page backwards with ``before``."""
    conversation_service.require_conversation(db, conversation_id)
    messages = message_service.list_recent(
        db, conversation_id, limit, viewer_id=user.id, before=before
    )
    return MessageListResponse(items=messages)


@router.post("/conversations/{conversation_id}/read")
def mark_conversation_read(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark everything in the conversation read and reset the caller's unread count."""
    advanced = message_service.mark_conversation_read(db, conversation_id, user.id)
    return {"marked_read": advanced}


# =============================================================================
# Receipts
# =============================================================================


@router.post("/messages/delivered")
def mark_delivered_batch(
    data: ReceiptBatch,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    advanced = message_service.mark_delivered_batch(db, data.message_ids, user.id)
    return {"marked_delivered": advanced}


@router.post("/messages/{message_id}/delivered", response_model=MessageRead)
def mark_delivered(
    message_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return message_service.mark_delivered(db, message_id, user.id)


@router.post("/messages/{message_id}/read", response_model=MessageRead)
def mark_read(
    message_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return message_service.mark_read(db, message_id, user.id)


# =============================================================================
# Edit & delete
# =============================================================================


@router.patch("/messages/{message_id}", response_model=MessageRead)
def edit_message(
    message_id: UUID,
    data: MessageEdit,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return message_service.edit(db, message_id, user.id, data.content)


@router.delete("/messages/{message_id}", status_code=204)
def delete_message(
    message_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    message_service.soft_delete(db, message_id, actor_id=user.id)


@router.get("/messages/{message_id}/versions", response_model=list[MessageVersionRead])
def list_versions(
    message_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Edit history, oldest first."""
    _require_party(db, message_id, user)
    return message_service.list_versions(db, message_id)
