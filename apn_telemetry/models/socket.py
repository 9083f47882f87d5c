"""Socket grouping models.

A socket is a named, user-owned grouping of devices (for example one
installation site). ``socket_devices`` links devices to sockets; a device
belongs to at most one socket.
"""

import uuid

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from apn_telemetry.models.base import Base, TimestampMixin


class Socket(Base, TimestampMixin):
    """Named grouping of a user's devices."""

    __tablename__ = "sockets"

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

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Socket(name={self.name}, user_id={self.user_id})>"


class SocketDevice(Base):
    """Link between a socket and one of its devices."""

    __tablename__ = "socket_devices"

    socket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("sockets.id", ondelete="CASCADE"),
        primary_key=True,
    )

    device_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("devices.id", ondelete="CASCADE"),
        primary_key=True,
        unique=True,
    )
