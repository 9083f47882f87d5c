"""Read and lifecycle operations on stored telemetry for the HTTP API."""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.alert import Alert, ArchivedAlert
from apn_telemetry.models.device import Device
from apn_telemetry.models.sensor_reading import SensorReading

logger = get_logger(__name__)


@dataclass
class Page:
    items: list[Any]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


async def _paginate(db: AsyncSession, query, limit: int, offset: int) -> Page:
    count_result = await db.execute(
        select(func.count()).select_from(query.order_by(None).subquery())
    )
    total = count_result.scalar_one()
    result = await db.execute(query.limit(limit).offset(offset))
    return Page(items=list(result.scalars().all()), total=total, limit=limit, offset=offset)


async def list_sensor_readings(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
    device_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> Page:
    query = (
        select(SensorReading)
        .where(SensorReading.user_id == user_id)
        .order_by(SensorReading.received_at.desc())
    )
    if device_id:
        query = query.where(SensorReading.device_id == device_id)
    if start_date:
        query = query.where(SensorReading.received_at >= start_date)
    if end_date:
        query = query.where(SensorReading.received_at <= end_date)
    return await _paginate(db, query, limit, offset)


async def get_latest_reading(
    db: AsyncSession,
    user_id: uuid.UUID,
    device_id: str | None = None,
) -> SensorReading | None:
    query = select(SensorReading).where(SensorReading.user_id == user_id)
    if device_id:
        query = query.where(SensorReading.device_id == device_id)
    result = await db.execute(
        query.order_by(SensorReading.received_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def list_alerts(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
    active: bool | None = None,
    alert_type: str | None = None,
    device_id: str | None = None,
) -> Page:
    query = (
        select(Alert)
        .where(Alert.user_id == user_id)
        .order_by(Alert.received_at.desc())
    )
    if active is not None:
        query = query.where(Alert.is_active.is_(active))
    if alert_type:
        query = query.where(Alert.alert_type == alert_type)
    if device_id:
        query = query.where(Alert.device_id == device_id)
    return await _paginate(db, query, limit, offset)


async def get_active_alerts(db: AsyncSession, user_id: uuid.UUID) -> list[Alert]:
    result = await db.execute(
        select(Alert)
        .where(Alert.user_id == user_id, Alert.is_active.is_(True))
        .order_by(Alert.received_at.desc())
    )
    return list(result.scalars().all())


async def acknowledge_alert(
    db: AsyncSession, user_id: uuid.UUID, alert_id: uuid.UUID
) -> Alert | None:
    """Clear an alert manually.

    Returns:
        The alert, or None if the user has no alert with that id.
    """
    result = await db.execute(
        select(Alert).where(Alert.id == alert_id, Alert.user_id == user_id)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        return None
    if alert.is_active:
        alert.is_active = False
        alert.cleared_at = datetime.now(UTC)
        await db.flush()
        logger.info("Alert acknowledged", alert_id=str(alert_id), user_id=str(user_id))
    return alert


async def archive_alert(
    db: AsyncSession, user_id: uuid.UUID, alert_id: uuid.UUID
) -> ArchivedAlert | None:
    """Move an alert into ``archived_alerts``.

    Returns:
        The archived copy, or None if the user has no alert with that id.
    """
    result = await db.execute(
        select(Alert).where(Alert.id == alert_id, Alert.user_id == user_id)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        return None

    archived = ArchivedAlert(
        original_alert_id=alert.id,
        device_id=alert.device_id,
        user_id=alert.user_id,
        alert_type=alert.alert_type,
        sensor=alert.sensor,
        value=alert.value,
        was_active=alert.is_active,
        cleared_at=alert.cleared_at,
        received_at=alert.received_at,
        archived_at=datetime.now(UTC),
    )
    db.add(archived)
    await db.execute(delete(Alert).where(Alert.id == alert.id))
    await db.flush()
    logger.info("Alert archived", alert_id=str(alert_id), user_id=str(user_id))
    return archived


async def list_archived_alerts(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> Page:
    query = (
        select(ArchivedAlert)
        .where(ArchivedAlert.user_id == user_id)
        .order_by(ArchivedAlert.archived_at.desc())
    )
    return await _paginate(db, query, limit, offset)


async def get_user_stats(db: AsyncSession, user_id: uuid.UUID) -> dict[str, Any]:
    """Counts of active devices and alerts plus the latest activity."""
    device_count = await db.execute(
        select(func.count())
        .select_from(Device)
        .where(Device.user_id == user_id, Device.is_active.is_(True))
    )
    alert_count = await db.execute(
        select(func.count())
        .select_from(Alert)
        .where(Alert.user_id == user_id, Alert.is_active.is_(True))
    )
    latest = await get_latest_reading(db, user_id)
    return {
        "active_devices": device_count.scalar_one(),
        "active_alerts": alert_count.scalar_one(),
        "last_activity": latest.received_at if latest else None,
        "power_status": latest.power_status if latest else None,
    }
