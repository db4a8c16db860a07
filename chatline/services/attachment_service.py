"""Attachment service - validated uploads into the blob store."""

import hashlib
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, cast, select
from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.core.errors import NotFoundError, NotParticipantError, ValidationError
from chatline.db.models import ConversationParticipant, MediaAsset, Message
from chatline.schemas.message import AttachmentRef
from chatline.services.blob_store import BlobMetadata, BlobStore
from chatline.services.identity_service import require_user

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

ALLOWED_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/heic",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "audio/mpeg",
    "audio/mp4",
    "audio/aac",
    "audio/ogg",
    "audio/wav",
    "video/mp4",
}
MAX_FILENAME_LENGTH = 255


def calculate_checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def validate_file(filename: str, content_type: str, file_size: int) -> None:
    """Raise ValidationError unless the upload passes name, type and size checks."""
    name = (filename or "").strip()
    if not name:
        raise ValidationError("Filename is required")
    if len(name) > MAX_FILENAME_LENGTH or "/" in name or "\\" in name:
        raise ValidationError("Invalid filename")
    if content_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(f"Content type '{content_type}' not allowed")
    if file_size <= 0:
        raise ValidationError("File is empty")
    if file_size > settings.MAX_UPLOAD_BYTES:
        max_mb = settings.MAX_UPLOAD_BYTES / (1024 * 1024)
        raise ValidationError(f"File size exceeds {max_mb:.0f} MB limit")


def to_ref(asset: MediaAsset) -> AttachmentRef:
    return AttachmentRef(
        media_id=asset.id,
        storage_key=asset.storage_key,
        filename=asset.filename,
        content_type=asset.content_type,
        size=asset.file_size,
    )


# =============================================================================
# Service Functions
# =============================================================================


def upload_attachment(
    db: Session,
    store: BlobStore,
    owner_id: uuid.UUID,
    filename: str,
    content_type: str,
    content: bytes,
) -> AttachmentRef:
    """Validate, store the bytes and record the asset. Returns a stable reference."""
    validate_file(filename, content_type, len(content))
    require_user(db, owner_id)

    storage_key = store.put(
        content,
        BlobMetadata(owner_id=owner_id, filename=filename.strip(), content_type=content_type),
    )
    asset = MediaAsset(
        owner_id=owner_id,
        storage_key=storage_key,
        filename=filename.strip(),
        content_type=content_type,
        file_size=len(content),
        checksum_sha256=calculate_checksum(content),
    )
    db.add(asset)
    try:
        db.commit()
    except Exception:
        db.rollback()
        # Don't leave an orphaned blob behind
        store.delete(storage_key)
        raise
    db.refresh(asset)

    logger.info("Stored attachment %s (%s bytes) for user %s", asset.id, asset.file_size, owner_id)
    return to_ref(asset)


def get_attachment(db: Session, media_id: uuid.UUID) -> MediaAsset | None:
    return db.execute(
        select(MediaAsset).where(MediaAsset.id == media_id, MediaAsset.is_visible)
    ).scalar_one_or_none()


def can_access(db: Session, asset: MediaAsset, user_id: uuid.UUID) -> bool:
    """Owners, plus participants of a conversation where the owner shared the asset."""
    if asset.owner_id == user_id:
        return True
    shared = db.execute(
        select(Message.id)
        .join(
            ConversationParticipant,
            ConversationParticipant.conversation_id == Message.conversation_id,
        )
        .where(
            ConversationParticipant.user_id == user_id,
            Message.sender_id == asset.owner_id,
            Message.is_visible,
            cast(Message.content, String).contains(str(asset.id)),
        )
        .limit(1)
    ).first()
    return shared is not None


def open_attachment(
    db: Session,
    store: BlobStore,
    media_id: uuid.UUID,
    requester_id: uuid.UUID | None = None,
) -> tuple[MediaAsset, bytes]:
    asset = get_attachment(db, media_id)
    if not asset:
        raise NotFoundError(f"Attachment {media_id} not found")
    if requester_id is not None and not can_access(db, asset, requester_id):
        raise NotParticipantError("Attachment is not shared with this user")
    return asset, store.get(asset.storage_key)


def delete_attachment(
    db: Session,
    store: BlobStore,
    media_id: uuid.UUID,
    actor_id: uuid.UUID,
) -> MediaAsset:
    """Soft-delete the asset record and remove the blob. Owner only."""
    asset = get_attachment(db, media_id)
    if not asset:
        raise NotFoundError(f"Attachment {media_id} not found")
    if asset.owner_id != actor_id:
        raise NotParticipantError("Only the owner can delete this attachment")

    asset.is_deleted = True
    asset.deleted_at = datetime.now(timezone.utc)
    db.commit()
    store.delete(asset.storage_key)
    db.refresh(asset)
    logger.info("Deleted attachment %s", media_id)
    return asset
