"""User, session and device-token schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chatline.db.enums import DeviceType, Role, TokenType


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: UUID
    display_name: str
    first_name: str | None
    last_name: str | None
    avatar_url: str | None
    role: Role
    is_online: bool
    last_seen_at: datetime | None


class SessionCreate(BaseModel):
    device_type: DeviceType = DeviceType.UNKNOWN
    device_name: str | None = Field(default=None, max_length=255)
    device_id: str | None = Field(default=None, max_length=255)
    app_version: str | None = Field(default=None, max_length=50)


class SessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    device_type: DeviceType
    device_name: str | None
    device_id: str | None
    app_version: str | None
    connected_at: datetime
    last_activity_at: datetime
    disconnected_at: datetime | None
    close_reason: str | None


class DeviceTokenRegister(BaseModel):
    token: str = Field(min_length=1)
    token_type: TokenType = TokenType.FCM
    platform: str | None = Field(default=None, max_length=20)
    device_id: str | None = Field(default=None, max_length=255)
    app_version: str | None = Field(default=None, max_length=50)


class DeviceTokenRenew(BaseModel):
    old_token: str = Field(min_length=1)
    new_token: str = Field(min_length=1)


class DeviceTokenRevoke(BaseModel):
    token: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=200)


class DeviceTokenRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    token: str
    token_type: TokenType
    platform: str | None
    device_id: str | None
    active: bool
    last_used_at: datetime
