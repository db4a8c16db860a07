"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    User roles.

    - CUSTOMER: posts jobs and chats with providers (default)
    - PROVIDER: offers services, joins job chats
    - ADMINISTRATOR: platform staff
    """
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMINISTRATOR = "administrator"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


DEFAULT_ROLE = Role.CUSTOMER


class ConversationType(str, Enum):
    """Kinds of conversations."""
    JOB_CHAT = "job_chat"
    DIRECT_MESSAGE = "direct_message"


class ConversationStatus(str, Enum):
    """
    Conversation lifecycle.

    active → closed → archived, closed → active (reopen).
    archived is terminal.
    """
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class MessageType(str, Enum):
    """Types of messages."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    EMOJI = "emoji"
    AUDIO = "audio"
    SYSTEM = "system"

    @classmethod
    def editable(cls) -> set[str]:
        """Message types whose payload may be edited by the sender."""
        return {cls.TEXT.value, cls.IMAGE.value, cls.FILE.value}


class DeliveryStatus(str, Enum):
    """
    Message delivery progress.

    sent → delivered → read (sent → read allowed). Never moves backward.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANK[self]

    @classmethod
    def before(cls, target: "DeliveryStatus") -> list[str]:
        """Statuses that may advance to ``target``."""
        return [s.value for s in cls if s.rank < target.rank]


_DELIVERY_RANK = {
    DeliveryStatus.SENT: 0,
    DeliveryStatus.DELIVERED: 1,
    DeliveryStatus.READ: 2,
}


class NotificationChannel(str, Enum):
    """Delivery channels for notifications."""
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class NotificationPriority(str, Enum):
    """Priority hint passed to transports."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationStatus(str, Enum):
    """Status of a single (recipient, channel) dispatch attempt."""
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class TokenType(str, Enum):
    """Push token providers."""
    FCM = "FCM"
    APN = "APN"
    WEB_PUSH = "WEB_PUSH"


class TokenAction(str, Enum):
    """Audit actions recorded in token history."""
    REGISTERED = "REGISTERED"
    RENEWED = "RENEWED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    FAILED = "FAILED"


class DeviceType(str, Enum):
    """Kinds of connected devices."""
    WEB = "web"
    IOS = "ios"
    ANDROID = "android"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"


class SessionCloseReason(str, Enum):
    """Why a session was closed."""
    LOGOUT = "logout"
    STALE = "stale"
    REPLACED = "replaced"
    ADMIN = "admin"


# Defaults
DEFAULT_CONVERSATION_STATUS = ConversationStatus.ACTIVE
DEFAULT_DELIVERY_STATUS = DeliveryStatus.SENT
DEFAULT_NOTIFICATION_STATUS = NotificationStatus.QUEUED
DEFAULT_NOTIFICATION_PRIORITY = NotificationPriority.NORMAL
