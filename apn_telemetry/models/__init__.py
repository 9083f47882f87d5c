# Database Models
from apn_telemetry.models.alert import Alert, AlertType, ArchivedAlert
from apn_telemetry.models.base import Base, TimestampMixin
from apn_telemetry.models.device import Device
from apn_telemetry.models.push_token import PushToken
from apn_telemetry.models.sensor_reading import SensorReading
from apn_telemetry.models.socket import Socket, SocketDevice
from apn_telemetry.models.user import User

__all__ = [
    "Alert",
    "AlertType",
    "ArchivedAlert",
    "Base",
    "Device",
    "PushToken",
    "SensorReading",
    "Socket",
    "SocketDevice",
    "TimestampMixin",
    "User",
]
