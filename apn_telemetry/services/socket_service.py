"""Socket groupings of a user's devices.

A new socket is only created when the user has at least one active device
that is not in any socket yet and has reported a reading recently. Those
devices are linked to the new socket.
"""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.device import Device
from apn_telemetry.models.sensor_reading import SensorReading
from apn_telemetry.models.socket import Socket, SocketDevice

logger = get_logger(__name__)


class SocketCreationError(Exception):
    """No device justifies a new socket."""


async def find_unassigned_recent_devices(
    db: AsyncSession,
    user_id: uuid.UUID,
    activity_window: timedelta,
) -> list[Device]:
    """Active devices of the user that are in no socket and reported recently."""
    cutoff = datetime.now(UTC) - activity_window
    assigned = select(SocketDevice.device_id)
    recent = (
        select(SensorReading.device_id)
        .where(
            SensorReading.user_id == user_id,
            SensorReading.received_at >= cutoff,
        )
        .distinct()
    )
    result = await db.execute(
        select(Device)
        .where(
            Device.user_id == user_id,
            Device.is_active.is_(True),
            Device.id.not_in(assigned),
            Device.device_id.in_(recent),
        )
        .order_by(Device.paired_at.desc())
    )
    return list(result.scalars().all())


async def create_socket(
    db: AsyncSession,
    user_id: uuid.UUID,
    name: str,
    activity_window: timedelta,
    location: str | None = None,
    device_ids: list[str] | None = None,
) -> tuple[Socket, list[Device]]:
    """Create a socket and link eligible devices to it. The caller commits.

    Args:
        device_ids: Hardware ids to link; defaults to every eligible device.
            Requested ids that are not eligible are ignored.

    Raises:
        SocketCreationError: If no eligible device is available.
    """
    candidates = await find_unassigned_recent_devices(db, user_id, activity_window)
    if device_ids:
        requested = set(device_ids)
        candidates = [d for d in candidates if d.device_id in requested]
    if not candidates:
        raise SocketCreationError(
            "No unassigned device with recent activity is available for a new socket"
        )

    socket = Socket(user_id=user_id, name=name, location=location)
    db.add(socket)
    await db.flush()
    for device in candidates:
        db.add(SocketDevice(socket_id=socket.id, device_id=device.id))
    await db.flush()

    logger.info(
        "Socket created",
        socket_id=str(socket.id),
        user_id=str(user_id),
        devices=len(candidates),
    )
    return socket, candidates


async def list_sockets(
    db: AsyncSession, user_id: uuid.UUID
) -> list[tuple[Socket, list[str]]]:
    """Return the user's sockets with the hardware ids linked to each."""
    result = await db.execute(
        select(Socket).where(Socket.user_id == user_id).order_by(Socket.created_at.desc())
    )
    sockets = list(result.scalars().all())
    if not sockets:
        return []

    links = await db.execute(
        select(SocketDevice.socket_id, Device.device_id)
        .join(Device, Device.id == SocketDevice.device_id)
        .where(SocketDevice.socket_id.in_([s.id for s in sockets]))
    )
    by_socket: dict[uuid.UUID, list[str]] = {}
    for socket_id, device_id in links.all():
        by_socket.setdefault(socket_id, []).append(device_id)
    return [(s, sorted(by_socket.get(s.id, []))) for s in sockets]


async def delete_socket(db: AsyncSession, user_id: uuid.UUID, socket_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(Socket).where(Socket.id == socket_id, Socket.user_id == user_id)
    )
    socket = result.scalar_one_or_none()
    if socket is None:
        return False
    await db.execute(delete(SocketDevice).where(SocketDevice.socket_id == socket_id))
    await db.delete(socket)
    await db.flush()
    logger.info("Socket deleted", socket_id=str(socket_id), user_id=str(user_id))
    return True
