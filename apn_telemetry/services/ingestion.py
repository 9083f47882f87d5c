"""Telemetry ingestion handlers.

One handler per stored message type. Handlers commit their own work and
return the alerts they newly created so the caller can notify the owner.
Storage failures are logged and swallowed: a failed insert must never stop
the event from being forwarded to live subscribers.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.alert import Alert, AlertType
from apn_telemetry.models.sensor_reading import SensorReading
from apn_telemetry.schemas.telemetry import (
    AlertClearedPayload,
    AlertPayload,
    DevicePayload,
    PowerStatusPayload,
    SensorReadingPayload,
)

logger = get_logger(__name__)


async def find_active_alert(
    db: AsyncSession,
    device_id: str,
    alert_type: str,
    sensor: str | None,
) -> Alert | None:
    """Return the active alert for (device, type, sensor label), if any."""
    query = select(Alert).where(
        Alert.device_id == device_id,
        Alert.alert_type == alert_type,
        Alert.is_active.is_(True),
    )
    if sensor is None:
        query = query.where(Alert.sensor.is_(None))
    else:
        query = query.where(Alert.sensor == sensor)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


async def upsert_active_alert(
    db: AsyncSession,
    device_id: str,
    user_id: uuid.UUID,
    alert_type: str,
    sensor: str | None,
    value: float | None,
    received_at: datetime,
) -> tuple[Alert, bool]:
    """Create an active alert unless one is already active for its scope.

    The insert runs inside a SAVEPOINT. If a concurrent insert wins the race
    the partial unique index rejects ours and the existing row is returned.
    The caller is responsible for committing.

    Returns:
        (alert, created) where created is False when an active alert
        already existed.
    """
    existing = await find_active_alert(db, device_id, alert_type, sensor)
    if existing is not None:
        return existing, False

    alert = Alert(
        device_id=device_id,
        user_id=user_id,
        alert_type=alert_type,
        sensor=sensor,
        value=value,
        is_active=True,
        received_at=received_at,
    )
    try:
        async with db.begin_nested():
            db.add(alert)
            await db.flush()
    except IntegrityError:
        existing = await find_active_alert(db, device_id, alert_type, sensor)
        if existing is None:
            raise
        logger.info(
            "Active alert created concurrently, reusing it",
            device_id=device_id,
            alert_type=alert_type,
            sensor=sensor,
        )
        return existing, False

    return alert, True


async def store_alert(
    db: AsyncSession,
    device_id: str,
    user_id: uuid.UUID,
    payload: AlertPayload,
    received_at: datetime,
) -> list[Alert]:
    """Store a device-reported alert.

    A newly created gas leak alert also gets a companion reading with only
    ``gas_detected`` set, so charts show the leak inline with other samples.
    """
    try:
        alert, created = await upsert_active_alert(
            db,
            device_id=device_id,
            user_id=user_id,
            alert_type=payload.alert,
            sensor=payload.sensor,
            value=payload.value,
            received_at=received_at,
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Error storing alert",
            device_id=device_id,
            alert_type=payload.alert,
        )
        return []

    if not created:
        logger.info(
            "Alert already active, not duplicated",
            device_id=device_id,
            alert_type=payload.alert,
            sensor=payload.sensor,
        )
        return []

    logger.info(
        "Alert stored",
        device_id=device_id,
        alert_type=alert.alert_type,
        sensor=alert.sensor,
    )

    if alert.alert_type == AlertType.GAS_LEAK_DETECTED.value:
        try:
            db.add(
                SensorReading(
                    device_id=device_id,
                    user_id=user_id,
                    gas_detected=True,
                    received_at=received_at,
                )
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(
                "Error storing gas detection reading", device_id=device_id
            )

    return [alert]


async def clear_alerts(
    db: AsyncSession,
    device_id: str,
    user_id: uuid.UUID,
    payload: AlertClearedPayload,
    received_at: datetime,
) -> list[Alert]:
    """Deactivate the device's active alerts.

    Without a type every active alert of the device is cleared; a type, and
    then a sensor label, narrow the scope.
    """
    alert_type = payload.resolved_alert_type
    query = update(Alert).where(
        Alert.device_id == device_id,
        Alert.user_id == user_id,
        Alert.is_active.is_(True),
    )
    if alert_type:
        query = query.where(Alert.alert_type == alert_type)
    if payload.sensor:
        query = query.where(Alert.sensor == payload.sensor)

    try:
        result = await db.execute(
            query.values(is_active=False, cleared_at=received_at)
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Error clearing alerts", device_id=device_id)
        return []

    logger.info(
        "Alerts cleared",
        device_id=device_id,
        alert_type=alert_type,
        sensor=payload.sensor,
        cleared=result.rowcount,
    )
    return []


async def store_sensor_reading(
    db: AsyncSession,
    device_id: str,
    user_id: uuid.UUID,
    payload: SensorReadingPayload,
    received_at: datetime,
) -> list[Alert]:
    """Store a sensor sample and raise water alerts for wet zones."""
    zone1 = payload.zone1_detected
    zone2 = payload.zone2_detected

    # Zone flags are written to both sensor columns of the zone
    reading = SensorReading(
        device_id=device_id,
        user_id=user_id,
        water_1=int(zone1),
        water_2=int(zone1),
        water_3=int(zone2),
        water_4=int(zone2),
        gas_detected=payload.gas_detected,
        temp_1=payload.resolved_temp_1,
        temp_2=payload.resolved_temp_2,
        movement=payload.resolved_movement,
        power_status=payload.power or None,
        received_at=received_at,
    )
    try:
        db.add(reading)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Error storing sensor reading", device_id=device_id)
        return []

    logger.info(
        "Sensor reading stored",
        device_id=device_id,
        zone1_water=zone1,
        zone2_water=zone2,
    )

    created: list[Alert] = []
    for zone, detected in ((1, zone1), (2, zone2)):
        if not detected:
            continue
        sensor = f"ZONE{zone}"
        try:
            alert, is_new = await upsert_active_alert(
                db,
                device_id=device_id,
                user_id=user_id,
                alert_type=AlertType.WATER_DETECTED.value,
                sensor=sensor,
                value=1.0,
                received_at=received_at,
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception(
                "Error storing water alert", device_id=device_id, sensor=sensor
            )
            continue
        if is_new:
            logger.info("Water alert created", device_id=device_id, sensor=sensor)
            created.append(alert)

    return created


async def store_power_status(
    db: AsyncSession,
    device_id: str,
    user_id: uuid.UUID,
    payload: PowerStatusPayload,
    received_at: datetime,
) -> list[Alert]:
    """Log a power report as a reading with only ``power_status`` set."""
    try:
        db.add(
            SensorReading(
                device_id=device_id,
                user_id=user_id,
                power_status=payload.resolved_power_status or None,
                received_at=received_at,
            )
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Error storing power status", device_id=device_id)
        return []

    logger.info("Power status stored", device_id=device_id)
    return []


Handler = Callable[
    [AsyncSession, str, uuid.UUID, DevicePayload, datetime], Awaitable[list[Alert]]
]

_HANDLERS: dict[type, Handler] = {
    AlertPayload: store_alert,
    AlertClearedPayload: clear_alerts,
    SensorReadingPayload: store_sensor_reading,
    PowerStatusPayload: store_power_status,
}


async def ingest(
    db: AsyncSession,
    device_id: str,
    user_id: uuid.UUID,
    payload: DevicePayload,
    received_at: datetime,
) -> list[Alert]:
    """Route a decoded payload to its handler.

    Returns:
        Alerts created while handling the payload.
    """
    handler = _HANDLERS[type(payload)]
    return await handler(db, device_id, user_id, payload, received_at)
