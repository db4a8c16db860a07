"""Tests for the reconciliation sweep and the worker loop."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from chatline import worker
from chatline.db.enums import NotificationChannel, NotificationStatus
from chatline.db.models import NotificationLog, UserSession
from chatline.services import identity_service, notification_catalog_service
from chatline.services.reconciliation_service import run_sweep


@pytest.fixture
def stale_session(db, alice):
    session_record = identity_service.record_session(db, alice.id)
    db.execute(
        update(UserSession)
        .where(UserSession.id == session_record.id)
        .values(last_activity_at=datetime.now(timezone.utc) - timedelta(hours=3))
    )
    db.commit()
    return session_record


@pytest.fixture
def stuck_log(db, bob):
    notification_catalog_service.seed_default_catalog(db)
    template = notification_catalog_service.resolve_template(db, "new_message", "web")
    log = NotificationLog(
        recipient_id=bob.id,
        event_id=template.event_id,
        template_id=template.id,
        app_id="web",
        channel=NotificationChannel.IN_APP.value,
        title="t",
        body="b",
        status=NotificationStatus.QUEUED.value,
        created_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    db.add(log)
    db.commit()
    return log


def test_sweep_closes_sessions_and_retries_notifications(db, dispatcher, stale_session, stuck_log):
    result = run_sweep(db, dispatcher)

    assert result.closed_sessions == 1
    assert result.retried_notifications == 1
    db.expire_all()
    assert db.get(UserSession, stale_session.id).is_active is False
    assert db.get(NotificationLog, stuck_log.id).status == NotificationStatus.SENT.value


def test_sweep_is_idempotent(db, dispatcher, stale_session, stuck_log):
    run_sweep(db, dispatcher)
    second = run_sweep(db, dispatcher)
    assert second.closed_sessions == 0
    assert second.retried_notifications == 0


def test_sweep_respects_thresholds(db, dispatcher, stale_session, stuck_log):
    result = run_sweep(
        db, dispatcher, stale_after=timedelta(hours=4), stuck_after=timedelta(hours=2)
    )
    assert result.closed_sessions == 0
    assert result.retried_notifications == 0


def test_worker_loop_runs_requested_iterations(db, dispatcher, stale_session, monkeypatch):
    sleeps = []
    monkeypatch.setattr(worker.time, "sleep", sleeps.append)

    worker.worker_loop(dispatcher, iterations=2)

    assert sleeps == [worker.settings.SWEEP_INTERVAL_SECONDS]
    db.expire_all()
    assert db.get(UserSession, stale_session.id).is_active is False


def test_worker_loop_survives_failed_sweep(db, dispatcher, monkeypatch, caplog):
    calls = []

    def exploding_sweep(session, d):
        calls.append(session)
        raise RuntimeError("database went away")

    monkeypatch.setattr(worker, "run_sweep", exploding_sweep)
    monkeypatch.setattr(worker.time, "sleep", lambda seconds: None)

    worker.worker_loop(dispatcher, iterations=2)

    assert len(calls) == 2
    assert "Sweep failed" in caplog.text
