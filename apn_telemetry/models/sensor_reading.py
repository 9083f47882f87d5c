"""Sensor reading model.

Append-only log of everything a device reports: periodic sensor frames,
power-state entries and the synthetic gas rows written alongside gas
leak alerts.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from apn_telemetry.models.base import Base, utc_now


class SensorReading(Base):
    """One row per received reading.

    The four water columns hold zone detection flags (1/0), not raw
    magnitudes: water_1/water_2 both carry zone 1 and water_3/water_4 both
    carry zone 2. New code should read zones through ``zone1_detected`` and
    ``zone2_detected``.
    """

    __tablename__ = "sensor_readings"
    __table_args__ = (
        Index("ix_sensor_readings_user_received", "user_id", "received_at"),
    )

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

    # Owner at time of receipt
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    water_1: Mapped[int | None] = mapped_column(Integer, nullable=True)
    water_2: Mapped[int | None] = mapped_column(Integer, nullable=True)
    water_3: Mapped[int | None] = mapped_column(Integer, nullable=True)
    water_4: Mapped[int | None] = mapped_column(Integer, nullable=True)

    gas_detected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    temp_1: Mapped[float | None] = mapped_column(Float, nullable=True)
    temp_2: Mapped[float | None] = mapped_column(Float, nullable=True)

    movement: Mapped[float | None] = mapped_column(Float, nullable=True)

    # "MAIN" / "BACKUP_UPS" or a structured object (voltages, currents)
    power_status: Mapped[Any | None] = mapped_column(JSON, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        index=True,
    )

    @property
    def zone1_detected(self) -> bool:
        return bool(self.water_1)

    @property
    def zone2_detected(self) -> bool:
        return bool(self.water_3)

    def __repr__(self) -> str:
        return (
            f"<SensorReading(device_id={self.device_id}, "
            f"received_at={self.received_at})>"
        )
