"""Tests for the notification catalog and preference resolution."""
import pytest
from sqlalchemy import func, select

from chatline.core.errors import NotFoundError, ValidationError
from chatline.db.enums import NotificationChannel as Channel
from chatline.db.models import NotificationEvent, NotificationTemplate
from chatline.services import notification_catalog_service as catalog


@pytest.fixture
def seeded(db):
    return catalog.seed_default_catalog(db)


def test_seed_is_idempotent(db, seeded):
    again = catalog.seed_default_catalog(db)

    assert len(again) == len(seeded) == 6
    assert db.execute(select(func.count(NotificationEvent.id))).scalar_one() == 3
    assert db.execute(select(func.count(NotificationTemplate.id))).scalar_one() == 6


def test_resolve_template_per_app(db, seeded):
    mobile = catalog.resolve_template(db, "new_message", "mobile")
    web = catalog.resolve_template(db, "new_message", "web")

    assert mobile is not None and web is not None
    assert mobile.id != web.id
    assert catalog.resolve_template(db, "new_message", "watch") is None
    assert catalog.resolve_template(db, "unknown_event", "mobile") is None


def test_inactive_template_or_event_resolves_to_none(db, seeded):
    catalog.upsert_template(db, "mention", "mobile", title="t", body="b", is_active=False)
    assert catalog.resolve_template(db, "mention", "mobile") is None

    catalog.upsert_event(db, "job_status_changed", "Job status changed", is_active=False)
    assert catalog.resolve_template(db, "job_status_changed", "web") is None


def test_upsert_template_replaces_single_row(db, seeded):
    updated = catalog.upsert_template(
        db, "new_message", "mobile",
        title="{{sender_name}} says", body="{{message_preview}}",
        default_channels=["in_app", "PUSH", "push"],
    )

    assert updated.title == "{{sender_name}} says"
    assert updated.default_channels == ["push", "in_app"]
    assert db.execute(select(func.count(NotificationTemplate.id))).scalar_one() == 6


def test_upsert_template_validation(db, seeded):
    with pytest.raises(ValidationError):
        catalog.upsert_template(db, "new_message", "mobile", title="t", body="b", default_channels=["pigeon"])
    with pytest.raises(ValidationError):
        catalog.upsert_template(db, "new_message", "", title="t", body="b")
    with pytest.raises(NotFoundError):
        catalog.upsert_template(db, "no_such_event", "mobile", title="t", body="b")


def test_parse_channels_normalizes_order():
    assert catalog.parse_channels(["in_app", Channel.PUSH, " Email "]) == [
        Channel.PUSH, Channel.EMAIL, Channel.IN_APP
    ]
    with pytest.raises(ValidationError):
        catalog.parse_channels(["fax"])


# =============================================================================
# Preferences
# =============================================================================


def test_missing_preference_uses_template_defaults(db, seeded, alice):
    effective = catalog.resolve_preference(db, alice.id, "new_message", "mobile")

    assert effective.enabled is True
    assert effective.channels == [Channel.PUSH]
    assert effective.overridden is False

    web = catalog.resolve_preference(db, alice.id, "job_status_changed", "web")
    assert web.channels == [Channel.EMAIL, Channel.IN_APP]


def test_preference_without_template_falls_back_to_configured_default(db, alice):
    effective = catalog.resolve_preference(db, alice.id, "never_seeded", "mobile")
    assert effective.enabled is True
    assert effective.channels == [Channel.PUSH]


def test_partial_override_inherits_unset_fields(db, seeded, alice):
    catalog.set_preference(db, alice.id, "new_message", "mobile", channels=["push", "in_app"])
    effective = catalog.resolve_preference(db, alice.id, "new_message", "mobile")
    assert effective.enabled is True
    assert effective.channels == [Channel.PUSH, Channel.IN_APP]
    assert effective.overridden is True

    catalog.set_preference(db, alice.id, "new_message", "mobile", enabled=False)
    effective = catalog.resolve_preference(db, alice.id, "new_message", "mobile")
    assert effective.enabled is False
    assert effective.channels == [Channel.PUSH, Channel.IN_APP]


def test_disabled_template_default_can_be_enabled_by_user(db, seeded, alice, bob):
    catalog.upsert_template(
        db, "mention", "web", title="t", body="b", default_enabled=False, default_channels=["in_app"]
    )
    catalog.set_preference(db, alice.id, "mention", "web", enabled=True)

    assert catalog.resolve_preference(db, alice.id, "mention", "web").enabled is True
    assert catalog.resolve_preference(db, bob.id, "mention", "web").enabled is False


def test_preferences_are_scoped_per_app(db, seeded, alice):
    catalog.set_preference(db, alice.id, "new_message", "mobile", enabled=False)
    assert catalog.resolve_preference(db, alice.id, "new_message", "web").enabled is True


def test_set_preference_validation(db, seeded, alice):
    with pytest.raises(ValidationError):
        catalog.set_preference(db, alice.id, "new_message", "mobile", channels=["carrier_pigeon"])
    with pytest.raises(NotFoundError):
        catalog.set_preference(db, alice.id, "nope", "mobile", enabled=False)


def test_list_preferences(db, seeded, alice):
    catalog.set_preference(db, alice.id, "mention", "web", enabled=False)

    views = {v.event_key: v for v in catalog.list_preferences(db, alice.id, "web")}

    assert set(views) == {"new_message", "mention", "job_status_changed"}
    assert views["mention"].enabled is False
    assert views["mention"].overridden is True
    assert views["mention"].category_key == "messages"
    assert views["new_message"].channels == [Channel.IN_APP]
    assert views["new_message"].overridden is False
    assert catalog.list_preferences(db, alice.id, "watch") == []
