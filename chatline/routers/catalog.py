"""
Notification catalog administration.

Administrator-only endpoints to seed the built-in catalog and manage
per-app templates.
"""

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel
from sqlalchemy.orm import Session

from chatline.core.deps import get_db, require_administrator
from chatline.db.models import User
from chatline.schemas.notification import TemplateRead, TemplateUpsert
from chatline.services import notification_catalog_service


router = APIRouter(prefix="/admin/notification-catalog", tags=["admin"])


class SeedResponse(BaseModel):
    templates: int


@router.post("/seed", response_model=SeedResponse)
def seed_catalog(
    _: User = Depends(require_administrator),
    db: Session = Depends(get_db),
):
    """Install the built-in categories, events and templates (idempotent)."""
    templates = notification_catalog_service.seed_default_catalog(db)
    return SeedResponse(templates=len(templates))


@router.put("/events/{event_key}/templates/{app_id}", response_model=TemplateRead)
def upsert_template(
    data: TemplateUpsert,
    event_key: str = Path(..., max_length=100),
    app_id: str = Path(..., max_length=50),
    _: User = Depends(require_administrator),
    db: Session = Depends(get_db),
):
    return notification_catalog_service.upsert_template(
        db,
        event_key,
        app_id,
        title=data.title,
        body=data.body,
        payload=data.payload,
        priority=data.priority,
        platforms=data.platforms,
        default_channels=data.default_channels,
        default_enabled=data.default_enabled,
        is_active=data.is_active,
    )
