"""Hazard alert models.

An alert is active from the moment a hazard is first reported until a
clear message arrives or the user acknowledges it. At most one alert per
(device, type, sensor label) may be active at a time; a partial unique
index enforces this so concurrent ingestion cannot create duplicates.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from apn_telemetry.models.base import Base, utc_now


class AlertType(str, enum.Enum):
    """Alert types reported by devices or derived from readings."""

    WATER_DETECTED = "WATER_DETECTED"
    GAS_LEAK_DETECTED = "GAS_LEAK_DETECTED"
    HIGH_TEMPERATURE = "HIGH_TEMPERATURE"
    GROUND_MOVEMENT_DETECTED = "GROUND_MOVEMENT_DETECTED"
    POWER_ABNORMAL = "POWER_ABNORMAL"
    MULTIPLE_HAZARDS = "MULTIPLE_HAZARDS"


class Alert(Base):
    """An alert raised for a device.

    ``alert_type`` is stored as plain text: firmware may send types this
    server does not know yet, and those are kept rather than rejected.
    """

    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    device_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    alert_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Sensor or zone label, e.g. "ZONE1" or "TEMP2"
    sensor: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    value: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    cleared_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    def __repr__(self) -> str:
        return (
            f"<Alert(type={self.alert_type}, device_id={self.device_id}, "
            f"sensor={self.sensor}, active={self.is_active})>"
        )


# One active alert per (device, type, sensor label). NULL sensors are folded
# to '' so they collide with each other.
Index(
    "uq_alerts_active_scope",
    Alert.device_id,
    Alert.alert_type,
    func.coalesce(Alert.sensor, ""),
    unique=True,
    postgresql_where=Alert.is_active.is_(True),
    sqlite_where=Alert.is_active.is_(True),
)


class ArchivedAlert(Base):
    """Durable copy of an alert the user archived.

    Purged by the housekeeping job once ``archived_at`` falls outside the
    retention window.
    """

    __tablename__ = "archived_alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    original_alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
    )

    device_id: Mapped[str] = mapped_column(String(100), nullable=False)

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    sensor: Mapped[str | None] = mapped_column(String(50), nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    was_active: Mapped[bool] = mapped_column(Boolean, nullable=False)
    cleared_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    archived_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ArchivedAlert(type={self.alert_type}, device_id={self.device_id}, "
            f"archived_at={self.archived_at})>"
        )
