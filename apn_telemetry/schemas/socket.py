"""Socket API schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from apn_telemetry.schemas.base import CamelModel


class SocketCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    location: str | None = Field(default=None, max_length=255)
    device_ids: list[str] | None = None


class SocketResponse(CamelModel):
    id: UUID
    name: str
    location: str | None
    device_ids: list[str]
    created_at: datetime


class SocketListResponse(CamelModel):
    sockets: list[SocketResponse]
