"""Device pairing request and response schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from apn_telemetry.schemas.base import CamelModel


class DevicePairRequest(CamelModel):
    device_id: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(default=None, max_length=255)


class DeviceResponse(CamelModel):
    id: UUID
    device_id: str
    name: str | None
    paired_at: datetime
    is_active: bool


class DevicePairResponse(CamelModel):
    message: str
    device: DeviceResponse


class DeviceUnpairResponse(CamelModel):
    message: str
    device_id: str


class DeviceListResponse(CamelModel):
    devices: list[DeviceResponse]
