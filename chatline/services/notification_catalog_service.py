"""Notification catalog - categories, events, per-app templates and user preferences."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.core.errors import ConflictRaceError, NotFoundError, ValidationError
from chatline.db.enums import NotificationChannel, NotificationPriority
from chatline.db.models import (
    NotificationCategory, NotificationEvent, NotificationPreference, NotificationTemplate
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectivePreference:
    """Template defaults overlaid with a user's stored override."""
    enabled: bool
    channels: list[NotificationChannel] = field(default_factory=list)
    overridden: bool = False


@dataclass(frozen=True)
class PreferenceView:
    event_key: str
    event_name: str
    category_key: str | None
    enabled: bool
    channels: list[NotificationChannel]
    overridden: bool


def parse_channels(values) -> list[NotificationChannel]:
    """Validate a channel list against the closed channel set (order-normalized, deduped)."""
    requested = set()
    for raw in values or []:
        try:
            requested.add(NotificationChannel(str(getattr(raw, "value", raw)).strip().lower()))
        except ValueError:
            raise ValidationError(f"Unknown notification channel '{raw}'")
    return [channel for channel in NotificationChannel if channel in requested]


def default_channels() -> list[NotificationChannel]:
    return parse_channels(settings.default_channels_list)


# =============================================================================
# Catalog
# =============================================================================


def get_event(db: Session, event_key: str) -> NotificationEvent | None:
    return db.execute(
        select(NotificationEvent).where(NotificationEvent.event_key == event_key)
    ).scalar_one_or_none()


def require_event(db: Session, event_key: str) -> NotificationEvent:
    event = get_event(db, event_key)
    if not event:
        raise NotFoundError(f"Notification event '{event_key}' not found")
    return event


def upsert_category(
    db: Session,
    category_key: str,
    name: str,
    *,
    description: str | None = None,
    display_order: int = 0,
    is_active: bool = True,
) -> NotificationCategory:
    category = db.execute(
        select(NotificationCategory).where(NotificationCategory.category_key == category_key)
    ).scalar_one_or_none()
    if category is None:
        category = NotificationCategory(category_key=category_key)
        db.add(category)
    category.name = name
    category.description = description
    category.display_order = display_order
    category.is_active = is_active
    db.commit()
    db.refresh(category)
    return category


def upsert_event(
    db: Session,
    event_key: str,
    event_name: str,
    *,
    category_key: str | None = None,
    default_priority: NotificationPriority | str = NotificationPriority.NORMAL,
    description: str | None = None,
    is_active: bool = True,
) -> NotificationEvent:
    try:
        priority = NotificationPriority(default_priority)
    except ValueError:
        raise ValidationError(f"Unknown priority '{default_priority}'")

    category_id = None
    if category_key:
        category = db.execute(
            select(NotificationCategory).where(NotificationCategory.category_key == category_key)
        ).scalar_one_or_none()
        if category is None:
            raise NotFoundError(f"Notification category '{category_key}' not found")
        category_id = category.id

    event = get_event(db, event_key)
    if event is None:
        event = NotificationEvent(event_key=event_key)
        db.add(event)
    event.event_name = event_name
    event.category_id = category_id
    event.default_priority = priority.value
    event.description = description
    event.is_active = is_active
    db.commit()
    db.refresh(event)
    return event


def upsert_template(
    db: Session,
    event_key: str,
    app_id: str,
    *,
    title: str,
    body: str,
    payload: dict | None = None,
    priority: NotificationPriority | str | None = None,
    platforms: list[str] | None = None,
    default_channels: list | None = None,
    default_enabled: bool = True,
    is_active: bool = True,
) -> NotificationTemplate:
    """Create or replace the single template for (event, app)."""
    if not app_id or not app_id.strip():
        raise ValidationError("app_id is required")
    if not title.strip() or not body.strip():
        raise ValidationError("Template title and body are required")
    if priority is not None:
        try:
            priority = NotificationPriority(priority).value
        except ValueError:
            raise ValidationError(f"Unknown priority '{priority}'")
    channels = parse_channels(default_channels) if default_channels is not None else None

    event = require_event(db, event_key)
    template = db.execute(
        select(NotificationTemplate).where(
            NotificationTemplate.event_id == event.id,
            NotificationTemplate.app_id == app_id,
        )
    ).scalar_one_or_none()
    if template is None:
        template = NotificationTemplate(event_id=event.id, app_id=app_id)
        db.add(template)

    template.title = title
    template.body = body
    template.payload = payload
    template.priority = priority
    template.platforms = list(platforms) if platforms is not None else ["ios", "android"]
    template.default_channels = channels
    template.default_enabled = default_enabled
    template.is_active = is_active
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictRaceError(f"Template for ({event_key}, {app_id}) was created concurrently")
    db.refresh(template)
    return template


def resolve_template(db: Session, event_key: str, app_id: str) -> NotificationTemplate | None:
    """
    Active template for (event, app), or None.

    None (no template, inactive template or inactive event) means the event
    is not user-facing for that app.
    """
    return db.execute(
        select(NotificationTemplate)
        .join(NotificationEvent, NotificationEvent.id == NotificationTemplate.event_id)
        .where(
            NotificationEvent.event_key == event_key,
            NotificationEvent.is_active.is_(True),
            NotificationTemplate.app_id == app_id,
            NotificationTemplate.is_active.is_(True),
        )
    ).scalar_one_or_none()


# =============================================================================
# Preferences
# =============================================================================


def _template_defaults(template: NotificationTemplate | None) -> EffectivePreference:
    if template is None:
        return EffectivePreference(enabled=True, channels=default_channels())
    channels = (
        parse_channels(template.default_channels)
        if template.default_channels is not None
        else default_channels()
    )
    return EffectivePreference(enabled=template.default_enabled, channels=channels)


def _overlay(
    defaults: EffectivePreference, preference: NotificationPreference | None
) -> EffectivePreference:
    if preference is None:
        return defaults
    return EffectivePreference(
        enabled=defaults.enabled if preference.enabled is None else preference.enabled,
        channels=(
            defaults.channels
            if preference.channels is None
            else parse_channels(preference.channels)
        ),
        overridden=True,
    )


def _get_preference(
    db: Session, user_id: UUID, event_id: UUID, app_id: str
) -> NotificationPreference | None:
    return db.execute(
        select(NotificationPreference).where(
            NotificationPreference.user_id == user_id,
            NotificationPreference.event_id == event_id,
            NotificationPreference.app_id == app_id,
        )
    ).scalar_one_or_none()


def resolve_preference(
    db: Session,
    user_id: UUID,
    event_key: str,
    app_id: str,
    *,
    template: NotificationTemplate | None = None,
) -> EffectivePreference:
    """
    Effective ``{enabled, channels}`` for a user.

    A missing preference row is not an error: it yields the template's
    default-enabled flag and default channel set.
    """
    if template is None:
        template = resolve_template(db, event_key, app_id)
    defaults = _template_defaults(template)

    event_id = template.event_id if template is not None else None
    if event_id is None:
        event = get_event(db, event_key)
        if event is None:
            return defaults
        event_id = event.id
    return _overlay(defaults, _get_preference(db, user_id, event_id, app_id))


def set_preference(
    db: Session,
    user_id: UUID,
    event_key: str,
    app_id: str,
    *,
    enabled: bool | None = None,
    channels: list | None = None,
    updated_by: str = "user",
) -> NotificationPreference:
    """Upsert a user's override. Fields left as None keep their stored value."""
    parsed = parse_channels(channels) if channels is not None else None
    event = require_event(db, event_key)

    preference = _get_preference(db, user_id, event.id, app_id)
    if preference is None:
        preference = NotificationPreference(user_id=user_id, event_id=event.id, app_id=app_id)
        db.add(preference)
    if enabled is not None:
        preference.enabled = enabled
    if parsed is not None:
        preference.channels = parsed
    preference.updated_by = updated_by

    try:
        db.commit()
    except IntegrityError:
        # Concurrent first write for the same (user, event, app); apply on top.
        db.rollback()
        preference = _get_preference(db, user_id, event.id, app_id)
        if preference is None:
            raise
        if enabled is not None:
            preference.enabled = enabled
        if parsed is not None:
            preference.channels = parsed
        preference.updated_by = updated_by
        db.commit()

    db.refresh(preference)
    logger.info(
        "Notification preference set for user %s (%s/%s): enabled=%s channels=%s",
        user_id,
        event_key,
        app_id,
        preference.enabled,
        preference.channels,
    )
    return preference


def list_preferences(db: Session, user_id: UUID, app_id: str) -> list[PreferenceView]:
    """Effective preference for every active event that has a template for the app."""
    rows = db.execute(
        select(NotificationTemplate, NotificationEvent, NotificationCategory)
        .join(NotificationEvent, NotificationEvent.id == NotificationTemplate.event_id)
        .outerjoin(NotificationCategory, NotificationCategory.id == NotificationEvent.category_id)
        .where(
            NotificationTemplate.app_id == app_id,
            NotificationTemplate.is_active.is_(True),
            NotificationEvent.is_active.is_(True),
        )
        .order_by(NotificationCategory.display_order, NotificationEvent.event_key)
    ).all()

    stored = {
        pref.event_id: pref
        for pref in db.execute(
            select(NotificationPreference).where(
                NotificationPreference.user_id == user_id,
                NotificationPreference.app_id == app_id,
            )
        ).scalars()
    }

    views = []
    for template, event, category in rows:
        effective = _overlay(_template_defaults(template), stored.get(event.id))
        views.append(
            PreferenceView(
                event_key=event.event_key,
                event_name=event.event_name,
                category_key=category.category_key if category else None,
                enabled=effective.enabled,
                channels=effective.channels,
                overridden=effective.overridden,
            )
        )
    return views


# =============================================================================
# Default catalog
# =============================================================================

DEFAULT_CATEGORIES = [
    {"category_key": "messages", "name": "Messages", "display_order": 0},
    {"category_key": "activity", "name": "Activity", "display_order": 1},
    {"category_key": "reminders", "name": "Reminders", "display_order": 2},
]

DEFAULT_EVENTS = [
    {
        "event_key": "new_message",
        "event_name": "New message",
        "category_key": "messages",
        "default_priority": NotificationPriority.HIGH,
        "templates": {
            "mobile": {
                "title": "{{sender_name}}",
                "body": "{{message_preview}}",
                "payload": {"conversation_id": "{{conversation_id}}", "message_id": "{{message_id}}"},
                "default_channels": [NotificationChannel.PUSH],
            },
            "web": {
                "title": "New message from {{sender_name}}",
                "body": "{{message_preview}}",
                "payload": {"conversation_id": "{{conversation_id}}"},
                "default_channels": [NotificationChannel.IN_APP],
            },
        },
    },
    {
        "event_key": "mention",
        "event_name": "Mentioned in a conversation",
        "category_key": "messages",
        "default_priority": NotificationPriority.HIGH,
        "templates": {
            "mobile": {
                "title": "{{sender_name}} mentioned you",
                "body": "{{message_preview}}",
                "payload": {"conversation_id": "{{conversation_id}}", "message_id": "{{message_id}}"},
                "default_channels": [NotificationChannel.PUSH, NotificationChannel.IN_APP],
            },
            "web": {
                "title": "{{sender_name}} mentioned you",
                "body": "{{message_preview}}",
                "payload": {"conversation_id": "{{conversation_id}}"},
                "default_channels": [NotificationChannel.IN_APP],
            },
        },
    },
    {
        "event_key": "job_status_changed",
        "event_name": "Job status changed",
        "category_key": "activity",
        "default_priority": NotificationPriority.NORMAL,
        "templates": {
            "mobile": {
                "title": "{{job_title}}",
                "body": "Status changed to {{status}}",
                "payload": {"job_id": "{{job_id}}", "status": "{{status}}"},
                "default_channels": [NotificationChannel.PUSH],
            },
            "web": {
                "title": "{{job_title}}",
                "body": "Status changed to {{status}}",
                "payload": {"job_id": "{{job_id}}"},
                "default_channels": [NotificationChannel.IN_APP, NotificationChannel.EMAIL],
            },
        },
    },
]


def seed_default_catalog(db: Session) -> list[NotificationTemplate]:
    """Install the built-in categories, events and templates (idempotent)."""
    for category in DEFAULT_CATEGORIES:
        upsert_category(db, **category)

    templates = []
    for entry in DEFAULT_EVENTS:
        upsert_event(
            db,
            entry["event_key"],
            entry["event_name"],
            category_key=entry["category_key"],
            default_priority=entry["default_priority"],
        )
        for app_id, template in entry["templates"].items():
            templates.append(upsert_template(db, entry["event_key"], app_id, **template))

    logger.info("Seeded notification catalog (%s templates)", len(templates))
    return templates
