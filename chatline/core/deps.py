"""FastAPI dependencies: database session, caller identity, collaborators."""

from typing import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from chatline.core.errors import ForbiddenError, NotAuthenticatedError, ServiceUnavailableError
from chatline.db.enums import Role
from chatline.db.models import User
from chatline.db.session import SessionLocal
from chatline.services import identity_service
from chatline.services.blob_store import BlobStore
from chatline.services.notification_dispatch_service import NotificationDispatcher

USER_ID_HEADER = "X-User-Id"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Resolve the caller from identity headers set by the upstream gateway.

    The gateway has already verified the session token; ``X-User-Id`` is the
    external user UUID and ``X-User-*`` headers carry the profile claims.
    """
    external_id = request.headers.get(USER_ID_HEADER)
    if not external_id:
        raise NotAuthenticatedError(f"Missing {USER_ID_HEADER} header")

    claims = {
        "role": request.headers.get("X-User-Role"),
        "first_name": request.headers.get("X-User-First-Name"),
        "last_name": request.headers.get("X-User-Last-Name"),
        "name": request.headers.get("X-User-Name"),
        "email": request.headers.get("X-User-Email"),
        "phone": request.headers.get("X-User-Phone"),
    }
    return identity_service.find_or_create_from_external_identity(
        db, external_id, {k: v for k, v in claims.items() if v}
    )


def require_administrator(user: User = Depends(get_current_user)) -> User:
    if user.role != Role.ADMINISTRATOR.value:
        raise ForbiddenError("Administrator role required")
    return user


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_bot(request: Request):
    bot = getattr(request.app.state, "bot", None)
    if bot is None or not bot.started:
        raise ServiceUnavailableError("Assistant bot is not configured")
    return bot
