"""Reconciliation sweep - closes stale sessions and retries stuck notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.services import identity_service
from chatline.services.notification_dispatch_service import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    closed_sessions: int = 0
    retried_notifications: int = 0


def run_sweep(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    stale_after: timedelta | None = None,
    stuck_after: timedelta | None = None,
    batch_size: int | None = None,
) -> SweepResult:
    """
    One pass of the periodic sweep. Safe to run alongside live requests:
    session closes and notification retries are both no-ops for rows that
    another caller already moved on.
    """
    stale_after = stale_after or timedelta(minutes=settings.STALE_SESSION_MINUTES)
    stuck_after = stuck_after or timedelta(minutes=settings.STUCK_NOTIFICATION_MINUTES)
    batch_size = batch_size or settings.SWEEP_BATCH_SIZE

    result = SweepResult()
    result.closed_sessions = identity_service.close_stale_sessions(
        db, inactive_for=stale_after, limit=batch_size
    )
    result.retried_notifications = dispatcher.retry_stuck(
        db, older_than=stuck_after, limit=batch_size
    )

    if result.closed_sessions or result.retried_notifications:
        logger.info(
            "Sweep closed %s stale sessions, retried %s notifications",
            result.closed_sessions,
            result.retried_notifications,
        )
    return result
