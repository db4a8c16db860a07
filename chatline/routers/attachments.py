"""Attachment endpoints for file uploads and downloads."""

from typing import Annotated
from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile
from sqlalchemy.orm import Session

from chatline.core.config import settings
from chatline.core.deps import get_blob_store, get_current_user, get_db
from chatline.core.rate_limit import UPLOAD_LIMIT, limiter, uploads_unlimited
from chatline.db.models import User
from chatline.schemas.message import AttachmentRef
from chatline.services import attachment_service
from chatline.services.blob_store import BlobStore


router = APIRouter(prefix="/attachments", tags=["attachments"])


@router.post("", response_model=AttachmentRef, status_code=201)
@limiter.limit(UPLOAD_LIMIT, exempt_when=uploads_unlimited)
def upload_attachment(
    request: Request,
    file: Annotated[UploadFile, File()],
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    """
    Upload a file to attach to a message.

    The returned reference goes into an attachment message payload.
    """
    # One byte past the limit is enough to reject an oversized upload
    content = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    return attachment_service.upload_attachment(
        db,
        store,
        user.id,
        file.filename or "",
        file.content_type or "application/octet-stream",
        content,
    )


@router.get("/{media_id}")
def download_attachment(
    media_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    """Stream the bytes back to the owner or a conversation it was shared in."""
    asset, content = attachment_service.open_attachment(db, store, media_id, user.id)
    return Response(
        content=content,
        media_type=asset.content_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(asset.filename)}"},
    )


@router.delete("/{media_id}", status_code=204)
def delete_attachment(
    media_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    attachment_service.delete_attachment(db, store, media_id, user.id)
