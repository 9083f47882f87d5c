"""Push token API schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from apn_telemetry.schemas.base import CamelModel


class PushTokenRegisterRequest(CamelModel):
    expo_push_token: str = Field(..., min_length=1)
    device_id: str | None = Field(default=None, max_length=100)
    platform: str | None = Field(default=None, max_length=20)


class PushTokenRegisterResponse(CamelModel):
    success: bool = True
    message: str
    token_id: UUID


class PushTokenUnregisterRequest(CamelModel):
    expo_push_token: str | None = None


class PushTokenUnregisterResponse(CamelModel):
    success: bool = True
    message: str
    removed: int


class PushTokenResponse(CamelModel):
    id: UUID
    expo_push_token: str
    device_id: str | None
    platform: str | None
    created_at: datetime
    updated_at: datetime


class PushTokenListResponse(CamelModel):
    success: bool = True
    tokens: list[PushTokenResponse]
    count: int
