"""
Notifications Router - /me/notifications endpoints.

Provides the notification inbox, read/delivery receipts and per-event
preferences.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from chatline.core.deps import get_current_user, get_db
from chatline.db.enums import NotificationChannel
from chatline.db.models import User
from chatline.schemas.notification import (
    NotificationListResponse,
    NotificationRead,
    PreferenceRead,
    PreferenceUpdate,
    UnreadCountResponse,
)
from chatline.services import notification_catalog_service, notification_dispatch_service


router = APIRouter()


# =============================================================================
# Inbox
# =============================================================================


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    channel: NotificationChannel = Query(NotificationChannel.IN_APP),
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get user's notifications."""
    notifications = notification_dispatch_service.list_notifications(
        db,
        user.id,
        channel=channel,
        unread_only=unread_only,
        limit=limit,
        offset=offset,
    )
    unread_count = notification_dispatch_service.unread_count(db, user.id, channel)
    return NotificationListResponse(
        items=[NotificationRead.model_validate(n) for n in notifications],
        unread_count=unread_count,
    )


@router.get("/notifications/count", response_model=UnreadCountResponse)
def get_unread_count(
    channel: NotificationChannel = Query(NotificationChannel.IN_APP),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get unread notification count (for polling)."""
    return UnreadCountResponse(
        count=notification_dispatch_service.unread_count(db, user.id, channel)
    )


@router.post("/notifications/read-all")
def mark_all_read(
    channel: NotificationChannel = Query(NotificationChannel.IN_APP),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    count = notification_dispatch_service.mark_all_read(db, user.id, channel)
    return {"marked_read": count}


@router.post("/notifications/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return notification_dispatch_service.mark_notification_read(db, user.id, notification_id)


@router.post("/notifications/{notification_id}/delivered", response_model=NotificationRead)
def mark_delivered(
    notification_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Client-side delivery receipt."""
    return notification_dispatch_service.mark_log_delivered(db, notification_id, user.id)


# =============================================================================
# Preferences
# =============================================================================


@router.get("/notification-preferences", response_model=list[PreferenceRead])
def list_preferences(
    app_id: str = Query(..., min_length=1, max_length=50),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Effective preference for every event the app has a template for."""
    views = notification_catalog_service.list_preferences(db, user.id, app_id)
    return [
        PreferenceRead(
            event_key=v.event_key,
            event_name=v.event_name,
            category_key=v.category_key,
            enabled=v.enabled,
            channels=v.channels,
            overridden=v.overridden,
        )
        for v in views
    ]


@router.put("/notification-preferences/{event_key}", response_model=PreferenceRead)
def update_preference(
    event_key: str,
    data: PreferenceUpdate,
    app_id: str = Query(..., min_length=1, max_length=50),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    event = notification_catalog_service.require_event(db, event_key)
    notification_catalog_service.set_preference(
        db,
        user.id,
        event_key,
        app_id,
        enabled=data.enabled,
        channels=data.channels,
    )
    effective = notification_catalog_service.resolve_preference(db, user.id, event_key, app_id)
    return PreferenceRead(
        event_key=event.event_key,
        event_name=event.event_name,
        category_key=event.category.category_key if event.category else None,
        enabled=effective.enabled,
        channels=effective.channels,
        overridden=effective.overridden,
    )
