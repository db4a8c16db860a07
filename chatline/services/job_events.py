"""Job-status hook - tells job conversation participants their job changed."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.services.conversation_service import list_active_participants, list_job_conversations
from chatline.services.notification_dispatch_service import DispatchResult, NotificationDispatcher

logger = logging.getLogger(__name__)

JOB_STATUS_CHANGED_EVENT = "job_status_changed"


def handle_job_status_changed(
    db: Session,
    dispatcher: NotificationDispatcher,
    job_id: UUID,
    status: str,
    *,
    actor_id: UUID | None = None,
    job_title: str | None = None,
    app_ids: list[str] | None = None,
) -> list[DispatchResult]:
    conversations = list_job_conversations(db, job_id)
    if not conversations:
        logger.debug("No conversations for job %s; skipping status notification", job_id)
        return []

    recipients: list[UUID] = []
    for conversation in conversations:
        for participant in list_active_participants(db, conversation.id):
            if participant.user_id == actor_id or participant.user_id in recipients:
                continue
            if not participant.notification_enabled or participant.is_blocked:
                continue
            recipients.append(participant.user_id)
    if not recipients:
        return []

    title = job_title or next((c.job_title for c in conversations if c.job_title), "") or "Job update"
    context = {"job_id": str(job_id), "job_title": title, "status": status}
    return [
        dispatcher.dispatch(
            db,
            JOB_STATUS_CHANGED_EVENT,
            app_id,
            context,
            recipients,
            triggered_by=actor_id,
            business_entity_type="job",
            business_entity_id=str(job_id),
        )
        for app_id in app_ids or settings.notification_app_ids
    ]
