"""Conversation API schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chatline.db.enums import ConversationStatus, ConversationType


class DirectConversationCreate(BaseModel):
    user_id: UUID


class JobConversationCreate(BaseModel):
    job_id: UUID
    job_title: str | None = Field(default=None, max_length=255)
    participant_ids: list[UUID] = Field(default_factory=list)


class ParticipantAdd(BaseModel):
    user_id: UUID


class ParticipantSettingsUpdate(BaseModel):
    """Partial update; omitted fields are unchanged."""
    muted: bool | None = None
    pinned: bool | None = None
    notification_enabled: bool | None = None
    blocked: bool | None = None


class ParticipantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    unread_count: int
    is_muted: bool
    is_pinned: bool
    notification_enabled: bool
    is_blocked: bool
    joined_at: datetime
    left_at: datetime | None
    last_read_at: datetime | None


class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: ConversationType
    job_id: UUID | None
    job_title: str | None
    participant_ids: list[UUID]
    status: ConversationStatus
    created_by: UUID
    closed_at: datetime | None
    archived_at: datetime | None
    last_message_at: datetime | None
    created_at: datetime


class ConversationListItem(BaseModel):
    conversation: ConversationRead
    settings: ParticipantRead


class ConversationListResponse(BaseModel):
    items: list[ConversationListItem]


class UnreadCountsResponse(BaseModel):
    counts: dict[UUID, int]
    total: int
