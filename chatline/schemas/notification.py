"""Notification inbox, preference and catalog schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chatline.db.enums import NotificationChannel, NotificationPriority, NotificationStatus


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    app_id: str
    channel: NotificationChannel
    title: str
    body: str
    payload: dict | None
    priority: NotificationPriority
    status: NotificationStatus
    business_entity_type: str | None
    business_entity_id: str | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationRead]
    unread_count: int


class UnreadCountResponse(BaseModel):
    count: int


class PreferenceUpdate(BaseModel):
    """Partial override; omitted fields keep their stored (or inherited) value."""
    enabled: bool | None = None
    channels: list[NotificationChannel] | None = None


class PreferenceRead(BaseModel):
    event_key: str
    event_name: str
    category_key: str | None
    enabled: bool
    channels: list[NotificationChannel]
    overridden: bool


class TemplateUpsert(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)
    payload: dict | None = None
    priority: NotificationPriority | None = None
    platforms: list[str] | None = None
    default_channels: list[NotificationChannel] | None = None
    default_enabled: bool = True
    is_active: bool = True


class TemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    app_id: str
    title: str
    body: str
    payload: dict | None
    priority: NotificationPriority | None
    platforms: list[str]
    default_channels: list[NotificationChannel] | None
    default_enabled: bool
    is_active: bool


class JobStatusChanged(BaseModel):
    status: str = Field(min_length=1, max_length=50)
    job_title: str | None = None


class DispatchSummary(BaseModel):
    event_key: str
    app_id: str
    template_found: bool
    sent: int
    failed: int
    suppressed: int
