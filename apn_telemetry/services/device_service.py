"""Device pairing service.

A device id can belong to one user at a time. Pairing an unowned device
creates it; pairing it again as the same owner is idempotent; pairing a
device someone else owns is refused without touching the row.
"""

import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.device import Device

logger = get_logger(__name__)


class DevicePairingError(Exception):
    """The device is already paired to another account."""


def default_device_name(device_id: str) -> str:
    return f"Device {device_id[-4:]}"


def _refresh_existing(device: Device, name: str | None) -> bool:
    """Apply a re-pair by the current owner. Returns True if anything changed."""
    changed = False
    if name and device.name != name:
        device.name = name
        changed = True
    if not device.is_active:
        device.is_active = True
        changed = True
    return changed


async def get_device(db: AsyncSession, device_id: str) -> Device | None:
    result = await db.execute(select(Device).where(Device.device_id == device_id))
    return result.scalar_one_or_none()


async def pair_device(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str,
    name: str | None = None,
) -> tuple[Device, bool]:
    """Pair a device to a user.

    The caller commits.

    Returns:
        (device, created) where created is False for a re-pair by the
        current owner.

    Raises:
        DevicePairingError: If another user owns the device.
    """
    existing = await get_device(db, device_id)
    if existing is not None:
        if existing.user_id != user_id:
            raise DevicePairingError("This device is paired to another account")
        if _refresh_existing(existing, name):
            await db.flush()
            logger.info("Device pairing updated", device_id=device_id, user_id=str(user_id))
        return existing, False

    device = Device(
        user_id=user_id,
        device_id=device_id,
        name=name or default_device_name(device_id),
        is_active=True,
    )
    try:
        async with db.begin_nested():
            db.add(device)
            await db.flush()
    except IntegrityError:
        # Paired concurrently; apply the same ownership rules to the winner
        existing = await get_device(db, device_id)
        if existing is None:
            raise
        if existing.user_id != user_id:
            raise DevicePairingError("This device is paired to another account")
        if _refresh_existing(existing, name):
            await db.flush()
        return existing, False

    logger.info("Device paired", device_id=device_id, user_id=str(user_id))
    return device, True


async def unpair_device(db: AsyncSession, user_id: uuid.UUID, device_id: str) -> bool:
    """Delete the device if the user owns it.

    Returns:
        True if a device was removed.
    """
    result = await db.execute(
        delete(Device).where(
            Device.device_id == device_id,
            Device.user_id == user_id,
        )
    )
    removed = result.rowcount > 0
    if removed:
        logger.info("Device unpaired", device_id=device_id, user_id=str(user_id))
    return removed


async def list_devices(db: AsyncSession, user_id: uuid.UUID) -> list[Device]:
    """Return the user's devices, most recently paired first."""
    result = await db.execute(
        select(Device)
        .where(Device.user_id == user_id)
        .order_by(Device.paired_at.desc())
    )
    return list(result.scalars().all())
