"""SQLAlchemy ORM models for identity, conversations, messages and notifications.

Models are plain data structures; queries and business rules live in
``chatline.services``. Soft-deletable entities expose one ``is_visible``
hybrid predicate that every read path filters through.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Uuid
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chatline.db.base import Base
from chatline.db.enums import (
    DEFAULT_CONVERSATION_STATUS, DEFAULT_DELIVERY_STATUS, DEFAULT_NOTIFICATION_PRIORITY,
    DEFAULT_NOTIFICATION_STATUS, DEFAULT_ROLE, ConversationType, DeviceType,
    NotificationChannel, TokenType,
)
from chatline.db.types import EnumList


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Identity & Presence
# =============================================================================

class User(Base):
    """
    Chat user.

    Identity is owned by an external system; ``external_id`` is the stable
    cross-system UUID and never changes once written.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="User")
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=DEFAULT_ROLE.value)
    # Set when an untrusted role claim was coerced to the default
    role_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    sessions: Mapped[list["UserSession"]] = relationship(back_populates="user")
    device_tokens: Mapped[list["DeviceToken"]] = relationship(back_populates="user")


class UserSession(Base):
    """
    One connected device.

    A user may hold many concurrent sessions; the user is online while at
    least one session has no ``disconnected_at``.
    """
    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("idx_user_sessions_user_open", "user_id", "disconnected_at"),
        Index("idx_user_sessions_activity", "last_activity_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    device_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeviceType.UNKNOWN.value
    )
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    connected_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    disconnected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    close_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    user: Mapped["User"] = relationship(back_populates="sessions")

    @hybrid_property
    def is_active(self) -> bool:
        return self.disconnected_at is None

    @is_active.expression
    def is_active(cls):
        return cls.disconnected_at.is_(None)


class DeviceToken(Base):
    """Push token registered by a device. Tokens are globally unique."""
    __tablename__ = "device_tokens"
    __table_args__ = (
        Index("idx_device_tokens_user_active", "user_id", "active"),
        Index("idx_device_tokens_device", "device_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    token_type: Mapped[str] = mapped_column(String(20), nullable=False, default=TokenType.FCM.value)
    platform: Mapped[str | None] = mapped_column(String(20), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    user: Mapped["User"] = relationship(back_populates="device_tokens")


class TokenHistory(Base):
    """
    Append-only audit trail of device token events.

    Rows are never updated or deleted; they answer "what happened to this
    token" without touching prior history.
    """
    __tablename__ = "token_history"
    __table_args__ = (
        Index("idx_token_history_user_created", "user_id", "created_at"),
        Index("idx_token_history_token", "token"),
        Index("idx_token_history_action_created", "action", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(Text, nullable=False)
    token_type: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


# =============================================================================
# Conversations & Messages
# =============================================================================

class Conversation(Base):
    """
    A message thread between a fixed set of participants.

    ``participant_ids`` and ``last_message_at`` are derived caches: the
    participant rows and the visible messages are the sources of truth.
    ``direct_pair_key`` is the normalized unordered user pair of a direct
    conversation and guards against duplicate creation.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint(
            f"type != '{ConversationType.JOB_CHAT.value}' OR job_id IS NOT NULL",
            name="ck_conversations_job_reference",
        ),
        Index("idx_conversations_job", "job_id"),
        Index("idx_conversations_last_message", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationType.DIRECT_MESSAGE.value
    )
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    direct_pair_key: Mapped[str | None] = mapped_column(String(80), unique=True, nullable=True)
    participant_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_CONVERSATION_STATUS.value
    )
    created_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    participants: Mapped[list["ConversationParticipant"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
    )

    @hybrid_property
    def is_visible(self) -> bool:
        return not self.is_deleted

    @is_visible.expression
    def is_visible(cls):
        return cls.is_deleted.is_(False)


class ConversationParticipant(Base):
    """
    A user's membership and personal settings within one conversation.

    ``unread_count`` only moves by +1 per accepted message from someone else
    and back to 0 on an explicit read by this participant.
    """
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_participant_conversation_user"),
        CheckConstraint("unread_count >= 0", name="ck_participant_unread_non_negative"),
        Index("idx_participants_user_pinned", "user_id", "is_pinned"),
        Index("idx_participants_user_left", "user_id", "left_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    joined_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    left_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_read_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    conversation: Mapped["Conversation"] = relationship(back_populates="participants")

    @hybrid_property
    def is_active(self) -> bool:
        return self.left_at is None

    @is_active.expression
    def is_active(cls):
        return cls.left_at.is_(None)


class Message(Base):
    """
    A message in a conversation.

    ``content`` holds a serialized ``MessageContent`` variant. Delivery
    status only advances (sent → delivered → read). Soft-deleted messages
    keep their id for audit and version history.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "sender_id", "client_temp_id",
            name="uq_messages_client_temp_id",
        ),
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        Index("idx_messages_receiver_status", "receiver_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=True
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Legacy direct sender/receiver pair (messages without a conversation)
    receiver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[dict] = mapped_column(JSON, nullable=False)
    reply_to_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_DELIVERY_STATUS.value
    )
    client_temp_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    edited_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    versions: Mapped[list["MessageVersion"]] = relationship(
        back_populates="message",
        order_by="MessageVersion.edited_at",
    )

    @hybrid_property
    def is_visible(self) -> bool:
        return not self.is_deleted

    @is_visible.expression
    def is_visible(cls):
        return cls.is_deleted.is_(False)


class MessageVersion(Base):
    """Immutable snapshot of a message payload taken before an edit."""
    __tablename__ = "message_versions"
    __table_args__ = (
        Index("idx_message_versions_message_edited", "message_id", "edited_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    version_content: Mapped[dict] = mapped_column(JSON, nullable=False)
    edited_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    edited_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    message: Mapped["Message"] = relationship(back_populates="versions")


class MediaAsset(Base):
    """Metadata for a blob uploaded to object storage."""
    __tablename__ = "media_assets"
    __table_args__ = (
        Index("idx_media_assets_owner", "owner_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    storage_key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    checksum_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    @hybrid_property
    def is_visible(self) -> bool:
        return not self.is_deleted

    @is_visible.expression
    def is_visible(cls):
        return cls.is_deleted.is_(False)


# =============================================================================
# Notification Catalog
# =============================================================================

class NotificationCategory(Base):
    """Grouping of events for inbox tabs (activity, messages, reminders)."""
    __tablename__ = "notification_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category_key: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)


class NotificationEvent(Base):
    """A catalog event identified by a stable key (e.g. ``new_message``)."""
    __tablename__ = "notification_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("notification_categories.id", ondelete="SET NULL"), nullable=True
    )
    event_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    event_name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_NOTIFICATION_PRIORITY.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    category: Mapped["NotificationCategory"] = relationship()


class NotificationTemplate(Base):
    """Per-application rendering of an event. At most one per (event, app)."""
    __tablename__ = "notification_templates"
    __table_args__ = (
        UniqueConstraint("event_id", "app_id", name="uq_notification_template_event_app"),
        Index("idx_notification_templates_app", "app_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notification_events.id", ondelete="CASCADE"), nullable=False
    )
    app_id: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[str | None] = mapped_column(String(20), nullable=True)
    platforms: Mapped[list] = mapped_column(JSON, nullable=False, default=lambda: ["ios", "android"])
    default_channels: Mapped[list | None] = mapped_column(EnumList(NotificationChannel), nullable=True)
    default_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)

    event: Mapped["NotificationEvent"] = relationship()


class NotificationPreference(Base):
    """
    Per-user override of a template's defaults.

    A NULL ``enabled`` or ``channels`` inherits the template default, so a
    partial update only overrides what the user actually set.
    """
    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "event_id", "app_id", name="uq_notification_preference"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notification_events.id", ondelete="CASCADE"), nullable=False
    )
    app_id: Mapped[str] = mapped_column(String(50), nullable=False)
    enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    channels: Mapped[list | None] = mapped_column(EnumList(NotificationChannel), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)


class NotificationLog(Base):
    """
    One (recipient, channel) dispatch attempt.

    Append-only audit trail: rows only ever advance status or gain error
    detail / read / delivery timestamps.
    """
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("idx_notification_logs_status_created", "status", "created_at"),
        Index("idx_notification_logs_recipient_unread", "recipient_id", "read_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    triggered_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("notification_events.id", ondelete="SET NULL"), nullable=True
    )
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("notification_templates.id", ondelete="SET NULL"), nullable=True
    )
    app_id: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_NOTIFICATION_PRIORITY.value
    )
    business_entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    business_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DEFAULT_NOTIFICATION_STATUS.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now, nullable=False)
