"""Paired hardware device model."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from apn_telemetry.models.base import Base, TimestampMixin, utc_now


class Device(Base, TimestampMixin):
    """A field device paired to exactly one user account.

    ``device_id`` is the hardware identifier that appears in broker topics
    and is globally unique; ``id`` is the surrogate key.
    """

    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    device_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    paired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Device(device_id={self.device_id}, user_id={self.user_id}, "
            f"active={self.is_active})>"
        )
