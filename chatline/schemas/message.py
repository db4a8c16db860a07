"""Message payload variants and message API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from chatline.db.enums import DeliveryStatus, MessageType


class AttachmentRef(BaseModel):
    """Stable reference to an uploaded blob."""
    model_config = ConfigDict(frozen=True)

    media_id: UUID
    storage_key: str
    filename: str
    content_type: str
    size: int = Field(ge=0)


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    # Citations attached to generated (bot) answers
    sources: list[dict[str, Any] | str] | None = None
    # Roster notices: what happened and to whom
    action: str | None = None
    subject_id: UUID | None = None

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message text cannot be empty")
        return value


class AttachmentContent(BaseModel):
    kind: Literal["attachment"] = "attachment"
    attachments: list[AttachmentRef] = Field(min_length=1)
    caption: str | None = None


class ReplyContent(BaseModel):
    kind: Literal["reply"] = "reply"
    reply_to: UUID
    text: str

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Reply text cannot be empty")
        return value


MessageContent = Annotated[
    Union[TextContent, AttachmentContent, ReplyContent],
    Field(discriminator="kind"),
]

_content_adapter: TypeAdapter = TypeAdapter(MessageContent)


def parse_content(raw: dict) -> TextContent | AttachmentContent | ReplyContent:
    """Parse a stored/untrusted payload into its closed variant."""
    return _content_adapter.validate_python(raw)


def dump_content(content: TextContent | AttachmentContent | ReplyContent) -> dict:
    """Serialize a payload variant for JSON storage."""
    return content.model_dump(mode="json", exclude_none=True)


def content_text(content: TextContent | AttachmentContent | ReplyContent) -> str:
    """Plain-text rendering used for notification previews and bot history."""
    if isinstance(content, AttachmentContent):
        if content.caption:
            return content.caption
        names = ", ".join(ref.filename for ref in content.attachments)
        return f"[attachment] {names}"
    return content.text


# =============================================================================
# API schemas
# =============================================================================


class MessageCreate(BaseModel):
    """Send a message to a conversation."""
    type: MessageType = MessageType.TEXT
    content: MessageContent
    client_temp_id: str | None = Field(default=None, max_length=100)


class MessageEdit(BaseModel):
    content: MessageContent


class ReceiptBatch(BaseModel):
    message_ids: list[UUID] = Field(min_length=1)


class MessageRead(BaseModel):
    """Message response."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID | None
    sender_id: UUID
    type: MessageType
    content: dict
    status: DeliveryStatus
    client_temp_id: str | None
    reply_to_id: UUID | None
    edited_at: datetime | None
    created_at: datetime


class MessageVersionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    message_id: UUID
    version_content: dict
    edited_at: datetime


class MessageListResponse(BaseModel):
    items: list[MessageRead]
