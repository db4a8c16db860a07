"""Tests for the notification dispatch pipeline and the recipient inbox."""
import json
import uuid
from datetime import datetime, timedelta, timezone

import anyio
import httpx
import pytest
from sqlalchemy import func, select, update

from chatline.core.errors import NotFoundError, TransportFailure
from chatline.db.enums import NotificationChannel, NotificationStatus, TokenAction, TokenType
from chatline.db.models import DeviceToken, NotificationLog, TokenHistory
from chatline.db.session import SessionLocal
from chatline.services import identity_service, notification_catalog_service
from chatline.services import notification_dispatch_service as dispatch_service
from chatline.services.notification_dispatch_service import NotificationDispatcher
from chatline.services.notification_transports import PushRouter, PushTransport, TransportReceipt

CONTEXT = {
    "sender_name": "Alice Smith",
    "message_preview": "See you at 5",
    "conversation_id": "c-1",
    "message_id": "m-1",
}


@pytest.fixture(autouse=True)
def seeded(db):
    return notification_catalog_service.seed_default_catalog(db)


def _logs(db, **filters):
    db.expire_all()
    query = select(NotificationLog)
    for name, value in filters.items():
        query = query.where(getattr(NotificationLog, name) == value)
    return list(db.execute(query).scalars())


# =============================================================================
# Rendering
# =============================================================================


def test_render_text_replaces_known_and_blanks_missing():
    assert dispatch_service.render_text("Hi {{name}}{{missing}}!", {"name": "Bob"}) == "Hi Bob!"
    assert dispatch_service.render_text("{{count}} new", {"count": 3}) == "3 new"


def test_render_payload_walks_nested_values():
    rendered = dispatch_service.render_payload(
        {"id": "{{id}}", "tags": ["{{tag}}", 1], "nested": {"x": "{{id}}"}},
        {"id": "42", "tag": "urgent"},
    )
    assert rendered == {"id": "42", "tags": ["urgent", 1], "nested": {"x": "42"}}


# =============================================================================
# Dispatch
# =============================================================================


def test_default_preference_writes_one_push_log(db, dispatcher, push_transport, bob, alice):
    result = dispatcher.dispatch(
        db, "new_message", "mobile", CONTEXT, [bob.id], triggered_by=alice.id
    )

    assert result.template_found is True
    assert result.sent == 1 and result.failed == 0
    logs = _logs(db)
    assert len(logs) == 1
    log = logs[0]
    assert log.channel == NotificationChannel.PUSH.value
    assert log.status == NotificationStatus.SENT.value
    assert log.sent_at is not None
    assert log.attempts == 1
    assert log.title == "Alice Smith"
    assert log.body == "See you at 5"
    assert log.payload == {"conversation_id": "c-1", "message_id": "m-1"}
    assert log.priority == "high"
    assert log.triggered_by == alice.id

    # The transport saw the row that had been committed as queued
    assert [d.log_id for d in push_transport.deliveries] == [log.id]


def test_disabled_preference_writes_nothing(db, dispatcher, push_transport, bob):
    notification_catalog_service.set_preference(db, bob.id, "new_message", "mobile", enabled=False)

    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])

    assert result.suppressed == [bob.id]
    assert _logs(db) == []
    assert push_transport.deliveries == []


def test_missing_template_is_silent_noop(db, dispatcher, bob):
    result = dispatcher.dispatch(db, "new_message", "watch", CONTEXT, [bob.id])
    assert result.template_found is False
    assert _logs(db) == []


def test_one_log_per_resolved_channel(db, dispatcher, email_transport, bob):
    result = dispatcher.dispatch(
        db, "job_status_changed", "web",
        {"job_title": "Fix sink", "status": "completed", "job_id": "j-1"}, [bob.id],
        business_entity_type="job", business_entity_id="j-1",
    )

    assert result.sent == 2
    logs = _logs(db)
    assert {log.channel for log in logs} == {"email", "in_app"}
    assert all(log.body == "Status changed to completed" for log in logs)
    assert all(log.business_entity_id == "j-1" for log in logs)
    assert email_transport.deliveries[0].email == bob.email


def test_duplicate_and_unknown_recipients(db, dispatcher, bob):
    stranger = uuid.uuid4()
    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id, bob.id, stranger])

    assert result.unknown_recipients == [stranger]
    assert len(_logs(db)) == 1


def test_transport_failure_recorded_on_log(db, dispatcher, push_transport, bob):
    push_transport.raises = TransportFailure("Recipient has no active device tokens")

    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])

    assert result.failed == 1
    log = _logs(db)[0]
    assert log.status == NotificationStatus.FAILED.value
    assert log.error_details["code"] == "TRANSPORT_FAILURE"
    assert "device tokens" in log.error_details["message"]


def test_unexpected_transport_error_does_not_escape(db, dispatcher, push_transport, bob):
    push_transport.raises = KeyError("boom")
    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])
    assert result.failed == 1
    assert _logs(db)[0].error_details["code"] == "INTERNAL_ERROR"


class _SlowTransport:
    channel = NotificationChannel.PUSH

    def __init__(self, delay: float):
        self.delay = delay
        self.started = 0

    async def send(self, delivery):
        self.started += 1
        await anyio.sleep(self.delay)
        return TransportReceipt(accepted=1)


def test_transport_timeout_fails_the_row(db, bob):
    slow = _SlowTransport(delay=5)
    dispatcher = NotificationDispatcher({NotificationChannel.PUSH: slow}, timeout=0.05)

    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])

    assert slow.started == 1
    assert result.sent == 0 and result.failed == 1
    log = _logs(db)[0]
    assert log.status == NotificationStatus.FAILED.value
    assert log.sent_at is None
    assert log.error_details["code"] == "TIMEOUT"
    assert log.error_details["retryable"] is True
    assert "timed out" in log.error_details["message"]


def test_one_channel_failing_keeps_the_other(db, dispatcher, email_transport, bob):
    email_transport.raises = TransportFailure("Resend API error: HTTP 422")

    result = dispatcher.dispatch(
        db, "job_status_changed", "web", {"job_title": "J", "status": "open"}, [bob.id]
    )

    assert result.sent == 1 and result.failed == 1
    statuses = {log.channel: log.status for log in _logs(db)}
    assert statuses == {"email": "failed", "in_app": "sent"}


def test_missing_transport_fails_the_row(db, bob):
    dispatcher = NotificationDispatcher({}, timeout=5)
    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])
    assert result.failed == 1
    assert _logs(db)[0].error_details["code"] == "TRANSPORT_FAILURE"


def test_invalid_token_is_deactivated(db, dispatcher, push_transport, bob):
    good = identity_service.register_device_token(db, bob.id, "good-token-123456")
    bad = identity_service.register_device_token(db, bob.id, "bad-token-654321")
    push_transport.invalid_tokens = [bad.token]
    push_transport.errors = ["bad...4321: HTTP 404"]

    dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])

    delivery = push_transport.deliveries[0]
    assert set(delivery.device_tokens) == {good.token, bad.token}

    db.expire_all()
    assert db.get(DeviceToken, bad.id).active is False
    assert db.get(DeviceToken, good.id).active is True
    failures = db.execute(
        select(TokenHistory).where(
            TokenHistory.token == bad.token, TokenHistory.action == TokenAction.FAILED.value
        )
    ).scalars().all()
    assert len(failures) == 1
    assert failures[0].details["deactivated"] is True

    log = _logs(db)[0]
    assert log.status == NotificationStatus.SENT.value
    assert log.error_details == {"partial_errors": ["bad...4321: HTTP 404"]}


def test_apn_tokens_are_routed_away_from_fcm(db, bob):
    fcm_token = identity_service.register_device_token(db, bob.id, "fcm-token-111111")
    apn_token = identity_service.register_device_token(db, bob.id, "apn-token-222222", "APN")
    web_token = identity_service.register_device_token(db, bob.id, "web-token-333333", "WEB_PUSH")
    fcm_requests = []

    def fcm_handler(request):
        fcm_requests.append(json.loads(request.content)["message"]["token"])
        return httpx.Response(200, json={"name": "projects/p/messages/1"})

    apn_deliveries = []

    class ApnDouble:
        channel = NotificationChannel.PUSH

        async def send(self, delivery):
            apn_deliveries.append(delivery)
            return TransportReceipt(accepted=len(delivery.device_tokens))

    router = PushRouter(
        {
            TokenType.FCM: PushTransport(
                "proj-1",
                "access",
                client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(fcm_handler)),
            ),
            TokenType.APN: ApnDouble(),
        }
    )
    dispatcher = NotificationDispatcher({NotificationChannel.PUSH: router}, timeout=5)

    result = dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])

    assert result.sent == 1
    assert fcm_requests == [fcm_token.token]
    assert [d.device_tokens for d in apn_deliveries] == [(apn_token.token,)]

    db.expire_all()
    for token in (fcm_token, apn_token, web_token):
        assert db.get(DeviceToken, token.id).active is True
    failures = db.execute(
        select(TokenHistory).where(TokenHistory.action == TokenAction.FAILED.value)
    ).scalars().all()
    assert failures == []
    assert _logs(db)[0].error_details == {"partial_errors": ["No transport for 1 WEB_PUSH token(s)"]}


def test_nothing_accepted_fails_the_row(db, dispatcher, push_transport, bob):
    push_transport.accepted = 0
    push_transport.errors = ["HTTP 500"]
    dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])
    log = _logs(db)[0]
    assert log.status == NotificationStatus.FAILED.value
    assert log.error_details["errors"] == ["HTTP 500"]


# =============================================================================
# Stuck rows
# =============================================================================


def _queued_log(db, recipient_id, *, age: timedelta) -> NotificationLog:
    template = notification_catalog_service.resolve_template(db, "new_message", "mobile")
    log = NotificationLog(
        recipient_id=recipient_id,
        event_id=template.event_id,
        template_id=template.id,
        app_id="mobile",
        channel=NotificationChannel.PUSH.value,
        title="t",
        body="b",
        status=NotificationStatus.QUEUED.value,
        created_at=datetime.now(timezone.utc) - age,
    )
    db.add(log)
    db.commit()
    return log


def test_retry_stuck_only_touches_old_queued_rows(db, dispatcher, push_transport, bob):
    stuck = _queued_log(db, bob.id, age=timedelta(minutes=30))
    fresh = _queued_log(db, bob.id, age=timedelta(seconds=5))

    assert dispatcher.retry_stuck(db, older_than=timedelta(minutes=10)) == 1

    db.expire_all()
    assert db.get(NotificationLog, stuck.id).status == NotificationStatus.SENT.value
    assert db.get(NotificationLog, fresh.id).status == NotificationStatus.QUEUED.value
    assert [d.log_id for d in push_transport.deliveries] == [stuck.id]


def test_failed_rows_are_not_retried(db, dispatcher, push_transport, bob):
    log = _queued_log(db, bob.id, age=timedelta(hours=1))
    db.execute(
        update(NotificationLog).where(NotificationLog.id == log.id).values(status="failed")
    )
    db.commit()
    assert dispatcher.retry_stuck(db, older_than=timedelta(minutes=10)) == 0


def test_retry_stuck_skips_rows_finished_by_another_sweep(db, bob):
    first = _queued_log(db, bob.id, age=timedelta(minutes=40))
    second = _queued_log(db, bob.id, age=timedelta(minutes=30))
    second_id = second.id
    sent = []

    class OtherSweepFinishesSecond:
        channel = NotificationChannel.PUSH

        async def send(self, delivery):
            sent.append(delivery.log_id)
            # Another worker claims and sends the next row meanwhile
            with SessionLocal() as other:
                other.execute(
                    update(NotificationLog)
                    .where(NotificationLog.id == second_id)
                    .values(status=NotificationStatus.SENT.value)
                )
                other.commit()
            return TransportReceipt(accepted=1)

    dispatcher = NotificationDispatcher(
        {NotificationChannel.PUSH: OtherSweepFinishesSecond()}, timeout=5
    )

    assert dispatcher.retry_stuck(db, older_than=timedelta(minutes=10)) == 1
    assert sent == [first.id]
    db.expire_all()
    assert db.get(NotificationLog, first.id).status == NotificationStatus.SENT.value
    assert db.get(NotificationLog, second_id).attempts == 0


def test_retry_stuck_respects_limit(db, dispatcher, push_transport, bob):
    for minutes in (50, 40, 30):
        _queued_log(db, bob.id, age=timedelta(minutes=minutes))

    assert dispatcher.retry_stuck(db, older_than=timedelta(minutes=10), limit=2) == 2
    assert len(push_transport.deliveries) == 2
    assert len(_logs(db, status=NotificationStatus.QUEUED.value)) == 1


# =============================================================================
# Inbox
# =============================================================================


def test_inbox_lists_in_app_rows_and_counts_unread(db, dispatcher, bob, alice):
    for i in range(3):
        dispatcher.dispatch(db, "new_message", "web", {**CONTEXT, "message_preview": f"m{i}"}, [bob.id])
    dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])

    items = dispatch_service.list_notifications(db, bob.id)
    assert len(items) == 3
    assert all(item.channel == "in_app" for item in items)
    assert dispatch_service.unread_count(db, bob.id) == 3
    assert dispatch_service.list_notifications(db, alice.id) == []

    first = dispatch_service.mark_notification_read(db, bob.id, items[0].id)
    read_at = first.read_at
    assert dispatch_service.mark_notification_read(db, bob.id, items[0].id).read_at == read_at
    assert dispatch_service.unread_count(db, bob.id) == 2
    assert len(dispatch_service.list_notifications(db, bob.id, unread_only=True)) == 2

    assert dispatch_service.mark_all_read(db, bob.id) == 2
    assert dispatch_service.unread_count(db, bob.id) == 0


def test_inbox_rows_belong_to_recipient(db, dispatcher, bob, alice):
    dispatcher.dispatch(db, "new_message", "web", CONTEXT, [bob.id])
    log = _logs(db)[0]
    with pytest.raises(NotFoundError):
        dispatch_service.mark_notification_read(db, alice.id, log.id)
    with pytest.raises(NotFoundError):
        dispatch_service.mark_log_delivered(db, log.id, alice.id)


def test_mark_log_delivered_only_advances_sent(db, dispatcher, push_transport, bob):
    dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])
    sent = _logs(db)[0]
    delivered = dispatch_service.mark_log_delivered(db, sent.id, bob.id)
    assert delivered.status == NotificationStatus.DELIVERED.value
    assert delivered.delivered_at is not None

    push_transport.raises = TransportFailure("down")
    dispatcher.dispatch(db, "new_message", "mobile", CONTEXT, [bob.id])
    failed = _logs(db, status="failed")[0]
    assert dispatch_service.mark_log_delivered(db, failed.id).status == NotificationStatus.FAILED.value
    assert db.execute(select(func.count(NotificationLog.id))).scalar_one() == 2
