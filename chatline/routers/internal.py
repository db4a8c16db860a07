"""
Internal endpoints called by other platform services.

Job-status changes are pushed here by the jobs service (administrator
identity); the assistant bot answers questions inside conversations.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from chatline.core.deps import get_bot, get_current_user, get_db, get_dispatcher, require_administrator
from chatline.db.models import User
from chatline.schemas.message import MessageRead
from chatline.schemas.notification import DispatchSummary, JobStatusChanged
from chatline.services import conversation_service
from chatline.services.bot_service import BotResponder
from chatline.services.job_events import handle_job_status_changed
from chatline.services.notification_dispatch_service import NotificationDispatcher


router = APIRouter(prefix="/internal", tags=["internal"])


class BotQuery(BaseModel):
    query: str = Field(min_length=1)
    conversation_id: UUID | None = None


@router.post("/jobs/{job_id}/status", response_model=list[DispatchSummary])
def job_status_changed(
    job_id: UUID,
    data: JobStatusChanged,
    actor: User = Depends(require_administrator),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Notify everyone in the job's conversations that its status changed."""
    results = handle_job_status_changed(
        db,
        dispatcher,
        job_id,
        data.status,
        actor_id=actor.id,
        job_title=data.job_title,
    )
    return [
        DispatchSummary(
            event_key=r.event_key,
            app_id=r.app_id,
            template_found=r.template_found,
            sent=r.sent,
            failed=r.failed,
            suppressed=len(r.suppressed),
        )
        for r in results
    ]


@router.post("/bot/ask", response_model=MessageRead)
def ask_bot(
    data: BotQuery,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    bot: BotResponder = Depends(get_bot),
):
    """
    Ask the assistant.

    Without a conversation the answer lands in the caller's direct
    conversation with the bot.
    """
    if data.conversation_id is not None:
        conversation_service.require_active_participant(db, data.conversation_id, user.id)
        result = bot.respond(data.query, conversation_id=data.conversation_id)
    else:
        result = bot.respond(data.query, user_id=user.id)
    return result.message
