"""Telemetry read API schemas: readings, alerts and stats."""

from datetime import datetime
from typing import Any
from uuid import UUID

from apn_telemetry.models.sensor_reading import SensorReading
from apn_telemetry.schemas.base import CamelModel, Pagination


class TemperatureOut(CamelModel):
    temp1: float | None
    temp2: float | None


class GyroOut(CamelModel):
    movement: float | None


class SensorReadingResponse(CamelModel):
    """A reading in the shape devices send it."""

    id: UUID
    device_id: str
    water: list[int | None]
    gas: bool | None
    temperature: TemperatureOut
    gyro: GyroOut
    power: Any = None
    received_at: datetime

    @classmethod
    def from_reading(cls, reading: SensorReading) -> "SensorReadingResponse":
        return cls(
            id=reading.id,
            device_id=reading.device_id,
            water=[reading.water_1, reading.water_2, reading.water_3, reading.water_4],
            gas=reading.gas_detected,
            temperature=TemperatureOut(temp1=reading.temp_1, temp2=reading.temp_2),
            gyro=GyroOut(movement=reading.movement),
            power=reading.power_status,
            received_at=reading.received_at,
        )


class SensorReadingListResponse(CamelModel):
    readings: list[SensorReadingResponse]
    pagination: Pagination


class LatestReadingResponse(CamelModel):
    reading: SensorReadingResponse | None


class AlertResponse(CamelModel):
    id: UUID
    device_id: str
    alert_type: str
    sensor: str | None
    value: float | None
    is_active: bool
    received_at: datetime
    cleared_at: datetime | None


class AlertListResponse(CamelModel):
    alerts: list[AlertResponse]
    pagination: Pagination


class ActiveAlertsResponse(CamelModel):
    alerts: list[AlertResponse]
    count: int


class AlertAcknowledgeResponse(CamelModel):
    message: str
    alert: AlertResponse


class ArchivedAlertResponse(CamelModel):
    id: UUID
    original_alert_id: UUID
    device_id: str
    alert_type: str
    sensor: str | None
    value: float | None
    was_active: bool
    received_at: datetime
    cleared_at: datetime | None
    archived_at: datetime


class AlertArchiveResponse(CamelModel):
    message: str
    archived: ArchivedAlertResponse


class ArchivedAlertListResponse(CamelModel):
    alerts: list[ArchivedAlertResponse]
    pagination: Pagination


class TelemetryStats(CamelModel):
    active_devices: int
    active_alerts: int
    last_activity: datetime | None
    power_status: Any = None


class TelemetryStatsResponse(CamelModel):
    stats: TelemetryStats


class ServiceStatusResponse(CamelModel):
    broker: dict[str, Any]
    live_connections: dict[str, int]
