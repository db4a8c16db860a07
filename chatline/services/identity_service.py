"""Identity & presence registry - users, device sessions and push tokens."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatline.core.errors import NotFoundError, ValidationError
from chatline.core.structured_logging import build_log_context, mask_token
from chatline.db.enums import (
    DEFAULT_ROLE, DeviceType, Role, SessionCloseReason, TokenAction, TokenType
)
from chatline.db.models import DeviceToken, TokenHistory, User, UserSession

logger = logging.getLogger(__name__)


# =============================================================================
# Users
# =============================================================================


def _parse_external_id(value) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError("Invalid external user ID. Must be a valid UUID")


def normalize_role(raw_role: str | None) -> tuple[str, bool]:
    """
    Normalize an untrusted role claim against the closed role set.

    Returns (role, flagged). Unknown values fall back to the default role
    and are flagged for audit; they are never rejected.
    """
    if raw_role is None or not str(raw_role).strip():
        return DEFAULT_ROLE.value, False
    candidate = str(raw_role).strip().lower()
    if Role.has_value(candidate):
        return candidate, False
    return DEFAULT_ROLE.value, True


def _display_name(claims: dict) -> str:
    first = claims.get("first_name") or claims.get("firstName")
    last = claims.get("last_name") or claims.get("lastName")
    if first and last:
        return f"{first} {last}"
    return first or last or claims.get("name") or "User"


def get_user(db: Session, user_id: UUID) -> User | None:
    return db.get(User, user_id)


def require_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def get_user_by_external_id(db: Session, external_id: UUID) -> User | None:
    return db.execute(
        select(User).where(User.external_id == external_id)
    ).scalar_one_or_none()


def find_or_create_from_external_identity(
    db: Session,
    external_id,
    claims: dict | None = None,
) -> User:
    """
    Look up a user by external identifier, creating one on first sight.

    The role claim is only applied at creation; ``external_id`` never
    changes afterwards. Name fields are refreshed on later sightings.
    """
    claims = claims or {}
    ext_id = _parse_external_id(external_id)

    user = get_user_by_external_id(db, ext_id)
    if user:
        changed = False
        for attr, keys in (
            ("first_name", ("first_name", "firstName")),
            ("last_name", ("last_name", "lastName")),
        ):
            value = next((claims[k] for k in keys if claims.get(k)), None)
            if value and getattr(user, attr) != value:
                setattr(user, attr, value)
                changed = True
        if changed:
            user.display_name = _display_name(claims)
            db.commit()
            db.refresh(user)
        return user

    role, flagged = normalize_role(claims.get("role"))
    if flagged:
        logger.warning(
            "Invalid role claim %r for external id %s, defaulting to %s",
            claims.get("role"),
            ext_id,
            role,
            extra={"audit": "role_coerced", **build_log_context(user_id=str(ext_id))},
        )

    user = User(
        external_id=ext_id,
        display_name=_display_name(claims),
        first_name=claims.get("first_name") or claims.get("firstName"),
        last_name=claims.get("last_name") or claims.get("lastName"),
        email=claims.get("email"),
        phone=claims.get("phone"),
        avatar_url=claims.get("avatar_url") or claims.get("avatar"),
        role=role,
        role_flagged=flagged,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Lost a first-sight race on external_id; the winner is the user.
        db.rollback()
        existing = get_user_by_external_id(db, ext_id)
        if existing is None:
            raise
        return existing
    db.refresh(user)
    logger.info("Created user %s for external id %s (role=%s)", user.id, ext_id, role)
    return user


# =============================================================================
# Sessions & presence
# =============================================================================


def record_session(
    db: Session,
    user_id: UUID,
    device_info: dict | None = None,
) -> UserSession:
    """Open a new session for a connected device and mark the user online."""
    device_info = device_info or {}
    user = _lock_user(db, user_id)

    device_type = str(device_info.get("device_type") or DeviceType.UNKNOWN.value).lower()
    if device_type not in {d.value for d in DeviceType}:
        device_type = DeviceType.UNKNOWN.value

    now = datetime.now(timezone.utc)
    session_record = UserSession(
        user_id=user.id,
        device_type=device_type,
        device_name=(device_info.get("device_name") or None),
        device_id=device_info.get("device_id"),
        app_version=device_info.get("app_version"),
        ip_address=device_info.get("ip_address"),
        connected_at=now,
        last_activity_at=now,
    )
    db.add(session_record)
    user.is_online = True
    db.commit()
    db.refresh(session_record)

    logger.info(
        "Opened session %s for user %s (device: %s)",
        session_record.id,
        user.id,
        device_type,
    )
    return session_record


def touch_session(db: Session, session_id: UUID, user_id: UUID | None = None) -> UserSession:
    """Record activity on an open session."""
    session_record = db.get(UserSession, session_id)
    if not session_record or (user_id is not None and session_record.user_id != user_id):
        raise NotFoundError(f"Session {session_id} not found")
    if session_record.is_active:
        session_record.last_activity_at = datetime.now(timezone.utc)
        db.commit()
    return session_record


def count_active_sessions(db: Session, user_id: UUID) -> int:
    return db.execute(
        select(func.count(UserSession.id)).where(
            UserSession.user_id == user_id,
            UserSession.is_active,
        )
    ).scalar_one()


def _lock_user(db: Session, user_id: UUID) -> User:
    """
    Lock the user row for a presence change.

    Opening and closing sessions both take this lock before counting open
    sessions, so a session opened concurrently is never missed.
    """
    user = db.execute(
        select(User).where(User.id == user_id).with_for_update()
    ).scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def _mark_offline_if_idle(db: Session, user: User, now: datetime) -> bool:
    """Mark a locked user offline when no session remains open."""
    if count_active_sessions(db, user.id) > 0:
        return False
    user.is_online = False
    user.last_seen_at = now
    return True


def close_session(
    db: Session,
    session_id: UUID,
    reason: SessionCloseReason = SessionCloseReason.LOGOUT,
    *,
    user_id: UUID | None = None,
) -> UserSession:
    """
    Close a session. Closing an already-closed session is a no-op.

    Closing the last open session marks the user offline.
    """
    session_record = db.get(UserSession, session_id)
    if not session_record or (user_id is not None and session_record.user_id != user_id):
        raise NotFoundError(f"Session {session_id} not found")

    user = _lock_user(db, session_record.user_id)
    session_record = db.execute(
        select(UserSession)
        .where(UserSession.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    if not session_record.is_active:
        db.commit()
        return session_record

    now = datetime.now(timezone.utc)
    session_record.disconnected_at = now
    session_record.close_reason = reason.value
    db.flush()
    went_offline = _mark_offline_if_idle(db, user, now)
    db.commit()

    logger.info(
        "Closed session %s for user %s (reason=%s, offline=%s)",
        session_id,
        session_record.user_id,
        reason.value,
        went_offline,
    )
    return session_record


def close_stale_sessions(
    db: Session,
    *,
    inactive_for: timedelta,
    limit: int = 100,
) -> int:
    """Close sessions with no activity for longer than ``inactive_for``."""
    cutoff = datetime.now(timezone.utc) - inactive_for
    candidates = list(
        db.execute(
            select(UserSession.id, UserSession.user_id)
            .where(UserSession.is_active, UserSession.last_activity_at < cutoff)
            .order_by(UserSession.last_activity_at)
            .limit(limit)
        )
    )
    if not candidates:
        return 0

    by_user: dict[UUID, list[UUID]] = {}
    for session_id, owner_id in candidates:
        by_user.setdefault(owner_id, []).append(session_id)

    now = datetime.now(timezone.utc)
    closed = 0
    # Users in a fixed order so concurrent sweeps take locks the same way
    for owner_id in sorted(by_user, key=str):
        user = _lock_user(db, owner_id)
        stale = db.execute(
            select(UserSession)
            .where(
                UserSession.id.in_(by_user[owner_id]),
                UserSession.is_active,
                UserSession.last_activity_at < cutoff,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        for session_record in stale:
            session_record.disconnected_at = now
            session_record.close_reason = SessionCloseReason.STALE.value
        db.flush()
        _mark_offline_if_idle(db, user, now)
        closed += len(stale)
    db.commit()

    logger.info("Closed %s stale sessions (cutoff=%s)", closed, cutoff.isoformat())
    return closed


def list_sessions(db: Session, user_id: UUID, active_only: bool = True) -> list[UserSession]:
    query = select(UserSession).where(UserSession.user_id == user_id)
    if active_only:
        query = query.where(UserSession.is_active)
    return list(db.execute(query.order_by(UserSession.connected_at.desc())).scalars())


# =============================================================================
# Device tokens (every change appends one TokenHistory row)
# =============================================================================


def _append_history(
    db: Session,
    *,
    user_id: UUID,
    token: str,
    token_type: str,
    action: TokenAction,
    device_id: str | None = None,
    previous_token: str | None = None,
    details: dict | None = None,
) -> TokenHistory:
    entry = TokenHistory(
        user_id=user_id,
        token=token,
        token_type=token_type,
        action=action.value,
        device_id=device_id,
        previous_token=previous_token,
        details=details,
    )
    db.add(entry)
    return entry


def _parse_token_type(token_type) -> str:
    if isinstance(token_type, TokenType):
        return token_type.value
    try:
        return TokenType(str(token_type).upper()).value
    except ValueError:
        raise ValidationError(f"Unknown token type '{token_type}'")


def register_device_token(
    db: Session,
    user_id: UUID,
    token: str,
    token_type: TokenType | str = TokenType.FCM,
    *,
    platform: str | None = None,
    device_id: str | None = None,
    app_version: str | None = None,
) -> DeviceToken:
    """
    Register a push token for a user.

    A token already known (for this or another user) is re-bound and
    re-activated and recorded as RENEWED; a new token is REGISTERED.
    """
    token = (token or "").strip()
    if not token:
        raise ValidationError("Device token is required")
    kind = _parse_token_type(token_type)
    require_user(db, user_id)

    existing = db.execute(
        select(DeviceToken).where(DeviceToken.token == token).with_for_update()
    ).scalar_one_or_none()

    now = datetime.now(timezone.utc)
    if existing:
        previous_owner = existing.user_id
        existing.user_id = user_id
        existing.token_type = kind
        existing.platform = platform or existing.platform
        existing.device_id = device_id or existing.device_id
        existing.app_version = app_version or existing.app_version
        existing.active = True
        existing.last_used_at = now
        _append_history(
            db,
            user_id=user_id,
            token=token,
            token_type=kind,
            action=TokenAction.RENEWED,
            device_id=existing.device_id,
            details={"previous_user_id": str(previous_owner)} if previous_owner != user_id else None,
        )
        db.commit()
        db.refresh(existing)
        logger.info("Renewed device token %s for user %s", mask_token(token), user_id)
        return existing

    device_token = DeviceToken(
        user_id=user_id,
        token=token,
        token_type=kind,
        platform=platform,
        device_id=device_id,
        app_version=app_version,
        last_used_at=now,
    )
    db.add(device_token)
    _append_history(
        db,
        user_id=user_id,
        token=token,
        token_type=kind,
        action=TokenAction.REGISTERED,
        device_id=device_id,
        details={"platform": platform, "app_version": app_version},
    )
    try:
        db.commit()
    except IntegrityError:
        # Concurrent registration of the same token; treat as a renewal.
        db.rollback()
        return register_device_token(
            db, user_id, token, kind,
            platform=platform, device_id=device_id, app_version=app_version,
        )
    db.refresh(device_token)
    logger.info("Registered device token %s for user %s", mask_token(token), user_id)
    return device_token


def renew_device_token(
    db: Session,
    user_id: UUID,
    old_token: str,
    new_token: str,
) -> DeviceToken:
    """Replace a device token in place (provider token rotation)."""
    new_token = (new_token or "").strip()
    if not new_token:
        raise ValidationError("Device token is required")
    device_token = db.execute(
        select(DeviceToken)
        .where(DeviceToken.token == old_token, DeviceToken.user_id == user_id)
        .with_for_update()
    ).scalar_one_or_none()
    if not device_token:
        raise NotFoundError("Device token not found")
    if old_token == new_token:
        return device_token

    clash = db.execute(
        select(DeviceToken).where(DeviceToken.token == new_token)
    ).scalar_one_or_none()
    if clash:
        # New token already registered elsewhere; retire the old row.
        device_token.active = False
        _append_history(
            db,
            user_id=user_id,
            token=old_token,
            token_type=device_token.token_type,
            action=TokenAction.EXPIRED,
            device_id=device_token.device_id,
            details={"replaced_by": mask_token(new_token)},
        )
        db.commit()
        return register_device_token(
            db, user_id, new_token, device_token.token_type,
            platform=device_token.platform, device_id=device_token.device_id,
            app_version=device_token.app_version,
        )

    device_token.token = new_token
    device_token.active = True
    device_token.last_used_at = datetime.now(timezone.utc)
    _append_history(
        db,
        user_id=user_id,
        token=new_token,
        token_type=device_token.token_type,
        action=TokenAction.RENEWED,
        device_id=device_token.device_id,
        previous_token=old_token,
    )
    db.commit()
    db.refresh(device_token)
    return device_token


def revoke_device_token(
    db: Session,
    user_id: UUID,
    token: str,
    *,
    reason: str | None = None,
    revoked_by: str = "user",
) -> DeviceToken:
    """Deactivate a token and append a REVOKED history row."""
    device_token = db.execute(
        select(DeviceToken)
        .where(DeviceToken.token == token, DeviceToken.user_id == user_id)
        .with_for_update()
    ).scalar_one_or_none()
    if not device_token:
        raise NotFoundError("Device token not found")

    device_token.active = False
    _append_history(
        db,
        user_id=user_id,
        token=token,
        token_type=device_token.token_type,
        action=TokenAction.REVOKED,
        device_id=device_token.device_id,
        details={"reason": reason, "revoked_by": revoked_by},
    )
    db.commit()
    db.refresh(device_token)
    logger.info("Revoked device token %s for user %s", mask_token(token), user_id)
    return device_token


def record_token_failure(
    db: Session,
    device_token: DeviceToken,
    error: str,
    *,
    code: str | None = None,
    deactivate: bool = False,
) -> TokenHistory:
    """
    Append a FAILED history row for a token the push provider rejected.

    Flushes only; the caller owns the transaction.
    """
    if deactivate:
        db.execute(
            update(DeviceToken)
            .where(DeviceToken.id == device_token.id)
            .values(active=False)
        )
    entry = _append_history(
        db,
        user_id=device_token.user_id,
        token=device_token.token,
        token_type=device_token.token_type,
        action=TokenAction.FAILED,
        device_id=device_token.device_id,
        details={"message": error[:500], "code": code, "deactivated": deactivate},
    )
    db.flush()
    return entry


def list_active_tokens(db: Session, user_id: UUID) -> list[DeviceToken]:
    return list(
        db.execute(
            select(DeviceToken)
            .where(DeviceToken.user_id == user_id, DeviceToken.active.is_(True))
            .order_by(DeviceToken.last_used_at.desc())
        ).scalars()
    )


def token_audit_trail(db: Session, token: str) -> list[TokenHistory]:
    """Every history row for a token (including renewals from it), newest first."""
    return list(
        db.execute(
            select(TokenHistory)
            .where((TokenHistory.token == token) | (TokenHistory.previous_token == token))
            .order_by(TokenHistory.created_at.desc())
        ).scalars()
    )
