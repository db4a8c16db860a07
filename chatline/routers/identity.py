"""
Identity Router - /me endpoints for profile, device sessions and push tokens.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from chatline.core.deps import get_current_user, get_db
from chatline.db.enums import SessionCloseReason
from chatline.db.models import User
from chatline.schemas.identity import (
    DeviceTokenRead,
    DeviceTokenRegister,
    DeviceTokenRenew,
    DeviceTokenRevoke,
    SessionCreate,
    SessionRead,
    UserRead,
)
from chatline.services import identity_service


router = APIRouter()


@router.get("", response_model=UserRead)
def get_me(user: User = Depends(get_current_user)):
    """Current user (created on first sight from gateway claims)."""
    return user


# =============================================================================
# Sessions
# =============================================================================


@router.post("/sessions", response_model=SessionRead, status_code=201)
def open_session(
    data: SessionCreate,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    device_info = data.model_dump()
    device_info["device_type"] = data.device_type.value
    device_info["ip_address"] = request.client.host if request.client else None
    return identity_service.record_session(db, user.id, device_info)


@router.get("/sessions", response_model=list[SessionRead])
def list_sessions(
    active_only: bool = Query(True),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return identity_service.list_sessions(db, user.id, active_only=active_only)


@router.post("/sessions/{session_id}/heartbeat", response_model=SessionRead)
def heartbeat(
    session_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return identity_service.touch_session(db, session_id, user.id)


@router.delete("/sessions/{session_id}", response_model=SessionRead)
def close_session(
    session_id: UUID,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Log out one device. The last closed session marks the user offline."""
    return identity_service.close_session(
        db, session_id, SessionCloseReason.LOGOUT, user_id=user.id
    )


# =============================================================================
# Device tokens
# =============================================================================


@router.get("/device-tokens", response_model=list[DeviceTokenRead])
def list_device_tokens(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return identity_service.list_active_tokens(db, user.id)


@router.post("/device-tokens", response_model=DeviceTokenRead, status_code=201)
def register_device_token(
    data: DeviceTokenRegister,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return identity_service.register_device_token(
        db,
        user.id,
        data.token,
        data.token_type,
        platform=data.platform,
        device_id=data.device_id,
        app_version=data.app_version,
    )


@router.post("/device-tokens/renew", response_model=DeviceTokenRead)
def renew_device_token(
    data: DeviceTokenRenew,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return identity_service.renew_device_token(db, user.id, data.old_token, data.new_token)


@router.post("/device-tokens/revoke", response_model=DeviceTokenRead)
def revoke_device_token(
    data: DeviceTokenRevoke,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return identity_service.revoke_device_token(
        db, user.id, data.token, reason=data.reason, revoked_by="user"
    )
