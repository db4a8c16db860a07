"""Notification dispatch pipeline.

Turns a domain event into logged, channel-specific delivery attempts:

1. Resolve the (event, app) template; no active template means a silent no-op.
2. Resolve each recipient's effective preference; disabled recipients are
   skipped without writing any log row.
3. Write one ``queued`` NotificationLog row per resolved channel and commit
   them before any transport call, then record each outcome as ``sent`` or
   ``failed`` with error detail.

Channels and recipients are independent: each log row commits its own
outcome, so one failure never rolls back another attempt. Rows left
``queued`` by a crash are picked up by ``retry_stuck``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from uuid import UUID

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from chatline.core.async_utils import run_async
from chatline.core.config import settings
from chatline.core.errors import ChatServiceError, NotFoundError
from chatline.core.structured_logging import build_log_context
from chatline.db.enums import (
    DEFAULT_NOTIFICATION_PRIORITY, NotificationChannel, NotificationStatus
)
from chatline.db.models import DeviceToken, NotificationEvent, NotificationLog, User
from chatline.services import identity_service, notification_catalog_service
from chatline.services.notification_transports import Delivery, Transport, TransportReceipt

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class DispatchResult:
    """Summary of one dispatch call."""
    event_key: str
    app_id: str
    template_found: bool = True
    log_ids: list[UUID] = field(default_factory=list)
    sent: int = 0
    failed: int = 0
    suppressed: list[UUID] = field(default_factory=list)
    unknown_recipients: list[UUID] = field(default_factory=list)


# =============================================================================
# Rendering
# =============================================================================


def render_text(text: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; missing variables render as empty."""

    def replace_var(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return VARIABLE_PATTERN.sub(replace_var, text)


def render_payload(value, variables: Mapping[str, Any]):
    """Render placeholders inside every string of a JSON-like payload."""
    if isinstance(value, str):
        return render_text(value, variables)
    if isinstance(value, dict):
        return {key: render_payload(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_payload(item, variables) for item in value]
    return value


# =============================================================================
# Dispatcher
# =============================================================================


class NotificationDispatcher:
    """Dispatches catalog events through an explicit channel -> transport mapping."""

    def __init__(
        self,
        transports: Mapping[NotificationChannel, Transport],
        *,
        timeout: float | None = None,
    ):
        self.transports = dict(transports)
        self.timeout = timeout if timeout is not None else settings.TRANSPORT_TIMEOUT_SECONDS

    def dispatch(
        self,
        db: Session,
        event_key: str,
        app_id: str,
        payload_context: Mapping[str, Any],
        recipients: list[UUID],
        *,
        triggered_by: UUID | None = None,
        business_entity_type: str | None = None,
        business_entity_id: str | None = None,
    ) -> DispatchResult:
        result = DispatchResult(event_key=event_key, app_id=app_id)

        template = notification_catalog_service.resolve_template(db, event_key, app_id)
        if template is None:
            logger.debug("No active template for %s/%s; nothing to dispatch", event_key, app_id)
            result.template_found = False
            return result

        event = db.get(NotificationEvent, template.event_id)
        priority = (
            template.priority
            or (event.default_priority if event else None)
            or DEFAULT_NOTIFICATION_PRIORITY.value
        )

        unique_recipients = list(dict.fromkeys(recipients))
        known = set(
            db.execute(select(User.id).where(User.id.in_(unique_recipients))).scalars()
        )

        title = render_text(template.title, payload_context)
        body = render_text(template.body, payload_context)
        payload = render_payload(template.payload, payload_context) if template.payload else None

        for recipient_id in unique_recipients:
            if recipient_id not in known:
                result.unknown_recipients.append(recipient_id)
                logger.warning("Dispatch %s skipped unknown recipient %s", event_key, recipient_id)
                continue

            preference = notification_catalog_service.resolve_preference(
                db, recipient_id, event_key, app_id, template=template
            )
            if not preference.enabled or not preference.channels:
                result.suppressed.append(recipient_id)
                continue

            logs = [
                NotificationLog(
                    recipient_id=recipient_id,
                    triggered_by=triggered_by,
                    event_id=template.event_id,
                    template_id=template.id,
                    app_id=app_id,
                    channel=channel.value,
                    title=title,
                    body=body,
                    payload=payload,
                    priority=priority,
                    business_entity_type=business_entity_type,
                    business_entity_id=business_entity_id,
                    status=NotificationStatus.QUEUED.value,
                )
                for channel in preference.channels
            ]
            db.add_all(logs)
            db.commit()

            for log in logs:
                result.log_ids.append(log.id)
                if self.deliver(db, log):
                    result.sent += 1
                else:
                    result.failed += 1

        logger.info(
            "Dispatched %s/%s: %s sent, %s failed, %s suppressed",
            event_key,
            app_id,
            result.sent,
            result.failed,
            len(result.suppressed),
            extra=build_log_context(event_key=event_key, app_id=app_id),
        )
        return result

    def _build_delivery(
        self, db: Session, log: NotificationLog
    ) -> tuple[Delivery, dict[str, DeviceToken]]:
        user = db.get(User, log.recipient_id)
        tokens: dict[str, DeviceToken] = {}
        if log.channel == NotificationChannel.PUSH.value:
            tokens = {t.token: t for t in identity_service.list_active_tokens(db, log.recipient_id)}
        delivery = Delivery(
            log_id=log.id,
            recipient_id=log.recipient_id,
            channel=NotificationChannel(log.channel),
            title=log.title,
            body=log.body,
            payload=log.payload,
            priority=log.priority,
            email=user.email if user else None,
            phone=user.phone if user else None,
            device_tokens=tuple(tokens),
            token_types=tuple((t.token, t.token_type) for t in tokens.values()),
        )
        return delivery, tokens

    def _record_token_outcomes(
        self, db: Session, receipt: TransportReceipt, tokens: dict[str, DeviceToken]
    ) -> None:
        for token in receipt.invalid_tokens:
            device_token = tokens.get(token)
            if device_token is not None:
                identity_service.record_token_failure(
                    db, device_token, "Rejected by push provider", code="INVALID_TOKEN", deactivate=True
                )

    def deliver(self, db: Session, log: NotificationLog) -> bool:
        """
        Hand one queued log row to its transport and commit the outcome.

        Returns True when the row ended ``sent``. Errors are recorded on the
        row, never raised.
        """
        context = build_log_context(
            user_id=log.recipient_id, channel=log.channel, app_id=log.app_id
        )
        transport = self.transports.get(NotificationChannel(log.channel))
        error: dict | None = None
        receipt: TransportReceipt | None = None
        tokens: dict[str, DeviceToken] = {}

        if transport is None:
            error = {"code": "TRANSPORT_FAILURE", "message": f"No transport for channel {log.channel}"}
        else:
            delivery, tokens = self._build_delivery(db, log)
            try:
                receipt = run_async(
                    transport.send(delivery),
                    timeout=self.timeout,
                    label=f"{log.channel} transport",
                )
            except ChatServiceError as exc:
                error = exc.to_dict()
            except httpx.HTTPError as exc:
                error = {"code": "TRANSPORT_FAILURE", "message": f"{exc.__class__.__name__}: {exc}"}
            except Exception as exc:
                logger.exception("Transport %s crashed for log %s", log.channel, log.id, extra=context)
                error = {"code": "INTERNAL_ERROR", "message": exc.__class__.__name__}

        if receipt is not None:
            self._record_token_outcomes(db, receipt, tokens)
            if receipt.accepted == 0:
                error = {
                    "code": "TRANSPORT_FAILURE",
                    "message": "No delivery accepted by provider",
                    "errors": receipt.errors,
                }

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "attempts": NotificationLog.attempts + 1,
            "updated_at": now,
        }
        if error is None:
            values.update(status=NotificationStatus.SENT.value, sent_at=now)
            if receipt is not None and receipt.errors:
                # Some device tokens failed while others accepted
                values["error_details"] = {"partial_errors": receipt.errors}
        else:
            values.update(status=NotificationStatus.FAILED.value, error_details=error)

        db.execute(
            update(NotificationLog)
            .where(
                NotificationLog.id == log.id,
                NotificationLog.status == NotificationStatus.QUEUED.value,
            )
            .values(**values),
            execution_options={"synchronize_session": False},
        )
        db.commit()
        db.refresh(log)

        if error is None:
            logger.info("Notification %s sent via %s", log.id, log.channel, extra=context)
        else:
            logger.warning(
                "Notification %s failed via %s: %s", log.id, log.channel, error.get("message"), extra=context
            )
        return log.status == NotificationStatus.SENT.value

    def retry_stuck(self, db: Session, *, older_than: timedelta, limit: int = 100) -> int:
        """
        Re-attempt ``queued`` rows older than the threshold. Returns rows attempted.

        Rows are claimed one at a time: each row stays locked until its
        outcome commits, so a concurrent sweep skips it instead of sending
        it again.
        """
        cutoff = datetime.now(timezone.utc) - older_than
        attempted = 0
        while attempted < limit:
            log = db.execute(
                select(NotificationLog)
                .where(
                    NotificationLog.status == NotificationStatus.QUEUED.value,
                    NotificationLog.created_at < cutoff,
                )
                .order_by(NotificationLog.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if log is None:
                break
            self.deliver(db, log)
            attempted += 1
        if attempted:
            logger.info("Retried %s stuck notifications", attempted)
        return attempted


# =============================================================================
# Recipient inbox
# =============================================================================


def list_notifications(
    db: Session,
    user_id: UUID,
    *,
    channel: NotificationChannel = NotificationChannel.IN_APP,
    unread_only: bool = False,
    limit: int = 20,
    offset: int = 0,
) -> list[NotificationLog]:
    query = select(NotificationLog).where(
        NotificationLog.recipient_id == user_id,
        NotificationLog.channel == channel.value,
        NotificationLog.status != NotificationStatus.FAILED.value,
    )
    if unread_only:
        query = query.where(NotificationLog.read_at.is_(None))
    query = query.order_by(NotificationLog.created_at.desc()).offset(offset).limit(limit)
    return list(db.execute(query).scalars())


def unread_count(
    db: Session, user_id: UUID, channel: NotificationChannel = NotificationChannel.IN_APP
) -> int:
    return db.execute(
        select(func.count(NotificationLog.id)).where(
            NotificationLog.recipient_id == user_id,
            NotificationLog.channel == channel.value,
            NotificationLog.status != NotificationStatus.FAILED.value,
            NotificationLog.read_at.is_(None),
        )
    ).scalar_one()


def _require_own_log(db: Session, user_id: UUID, log_id: UUID) -> NotificationLog:
    log = db.get(NotificationLog, log_id)
    if log is None or log.recipient_id != user_id:
        raise NotFoundError(f"Notification {log_id} not found")
    return log


def mark_notification_read(db: Session, user_id: UUID, log_id: UUID) -> NotificationLog:
    """Set ``read_at`` once; later calls keep the first read time."""
    log = _require_own_log(db, user_id, log_id)
    if log.read_at is None:
        log.read_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(log)
    return log


def mark_all_read(
    db: Session, user_id: UUID, channel: NotificationChannel = NotificationChannel.IN_APP
) -> int:
    result = db.execute(
        update(NotificationLog)
        .where(
            NotificationLog.recipient_id == user_id,
            NotificationLog.channel == channel.value,
            NotificationLog.read_at.is_(None),
        )
        .values(read_at=datetime.now(timezone.utc)),
        execution_options={"synchronize_session": False},
    )
    db.commit()
    return result.rowcount


def mark_log_delivered(
    db: Session, log_id: UUID, recipient_id: UUID | None = None
) -> NotificationLog:
    """Delivery receipt: ``sent -> delivered``; other states are left alone."""
    log = db.get(NotificationLog, log_id)
    if log is None or (recipient_id is not None and log.recipient_id != recipient_id):
        raise NotFoundError(f"Notification {log_id} not found")
    now = datetime.now(timezone.utc)
    db.execute(
        update(NotificationLog)
        .where(
            NotificationLog.id == log_id,
            NotificationLog.status == NotificationStatus.SENT.value,
        )
        .values(status=NotificationStatus.DELIVERED.value, delivered_at=now, updated_at=now),
        execution_options={"synchronize_session": False},
    )
    db.commit()
    db.refresh(log)
    return log
