"""Telemetry event and device payload schemas.

Device payloads arrive as loosely shaped JSON. The broker client classifies
each payload first; ``decode_payload`` then validates it against the strict
structure for that message type. A payload that does not match raises
``ValidationError`` and is not ingested.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# A water sensor above this raw magnitude counts as wet
WATER_THRESHOLD = 500

ALERT_CLEARED_STATUS = "ALERT_CLEARED"


class MessageType(str, enum.Enum):
    """Semantic type of an inbound telemetry message."""

    ALERT = "alert"
    ALERT_CLEARED = "alert_cleared"
    POWER_STATUS = "power_status"
    SENSOR_READING = "sensor_reading"
    MEDICATION = "medication"  # legacy firmware, forwarded but not stored
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TelemetryEvent:
    """One classified message received from a device."""

    device_id: str
    topic: str
    message_type: MessageType
    payload: dict[str, Any]
    received_at: datetime

    def to_envelope(self) -> dict[str, Any]:
        """Render the event the way live subscribers receive it."""
        return {
            "deviceId": self.device_id,
            "topic": self.topic,
            "messageType": self.message_type.value,
            "payload": self.payload,
            "receivedAt": self.received_at.isoformat(),
        }


class _DevicePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("sensor", mode="before", check_fields=False)
    @classmethod
    def sensor_label(cls, value: Any) -> Any:
        # Firmware sometimes sends numeric sensor indexes
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class AlertPayload(_DevicePayload):
    """``{"alert": "<TYPE>", "sensor": "...", "value": 1.5}``"""

    alert: str = Field(..., min_length=1, max_length=50)
    sensor: str | None = Field(default=None, max_length=50)
    value: float | None = None


class AlertClearedPayload(_DevicePayload):
    """Clear message; type and sensor narrow which active alerts are cleared."""

    status: str
    alert: str | None = Field(default=None, max_length=50)
    alert_type: str | None = Field(default=None, alias="alertType", max_length=50)
    sensor: str | None = Field(default=None, max_length=50)

    @property
    def resolved_alert_type(self) -> str | None:
        return self.alert or self.alert_type or None


class TemperatureBlock(_DevicePayload):
    temp1: float | None = None
    temp2: float | None = None


class GyroBlock(_DevicePayload):
    movement: float | None = None


class SensorReadingPayload(_DevicePayload):
    """Periodic sensor sample.

    Temperature and movement come either nested (``temperature.temp1``,
    ``gyro.movement``) or flat (``temp_1``, ``movement``); nested wins.
    """

    water: list[float | None] | None = None
    gas: bool | float | None = None
    temperature: TemperatureBlock | None = None
    temp_1: float | None = None
    temp_2: float | None = None
    gyro: GyroBlock | None = None
    movement: float | None = None
    power: Any = None

    @property
    def water_levels(self) -> list[float]:
        """Four raw magnitudes; missing or null sensors read as 0."""
        raw = list(self.water or [])[:4]
        raw += [None] * (4 - len(raw))
        return [value or 0 for value in raw]

    @property
    def zone1_detected(self) -> bool:
        levels = self.water_levels
        return levels[0] > WATER_THRESHOLD or levels[1] > WATER_THRESHOLD

    @property
    def zone2_detected(self) -> bool:
        levels = self.water_levels
        return levels[2] > WATER_THRESHOLD or levels[3] > WATER_THRESHOLD

    @property
    def gas_detected(self) -> bool | None:
        if "gas" not in self.model_fields_set:
            return None
        return bool(self.gas)

    @property
    def resolved_temp_1(self) -> float | None:
        if self.temperature is not None and self.temperature.temp1 is not None:
            return self.temperature.temp1
        return self.temp_1

    @property
    def resolved_temp_2(self) -> float | None:
        if self.temperature is not None and self.temperature.temp2 is not None:
            return self.temperature.temp2
        return self.temp_2

    @property
    def resolved_movement(self) -> float | None:
        if self.gyro is not None and self.gyro.movement is not None:
            return self.gyro.movement
        return self.movement


class PowerStatusPayload(_DevicePayload):
    """Power report. ``power`` may be a plain flag or a structured object."""

    power: Any
    status: Any = None

    @property
    def resolved_power_status(self) -> Any:
        return self.power or self.status


DevicePayload = (
    AlertPayload | AlertClearedPayload | SensorReadingPayload | PowerStatusPayload
)

_PAYLOAD_MODELS: dict[MessageType, type[_DevicePayload]] = {
    MessageType.ALERT: AlertPayload,
    MessageType.ALERT_CLEARED: AlertClearedPayload,
    MessageType.SENSOR_READING: SensorReadingPayload,
    MessageType.POWER_STATUS: PowerStatusPayload,
}


def decode_payload(
    message_type: MessageType, payload: dict[str, Any]
) -> DevicePayload | None:
    """Validate a classified payload against its per-type structure.

    Returns:
        The decoded payload, or None for message types that are not stored.

    Raises:
        ValidationError: If the payload does not match its type's structure.
    """
    model = _PAYLOAD_MODELS.get(message_type)
    if model is None:
        return None
    return model.model_validate(payload)


__all__ = [
    "ALERT_CLEARED_STATUS",
    "WATER_THRESHOLD",
    "AlertClearedPayload",
    "AlertPayload",
    "DevicePayload",
    "MessageType",
    "PowerStatusPayload",
    "SensorReadingPayload",
    "TelemetryEvent",
    "ValidationError",
    "decode_payload",
]
