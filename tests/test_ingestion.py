"""Tests for telemetry ingestion handlers against a real SQL database."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from apn_telemetry.models import Alert, AlertType, SensorReading
from apn_telemetry.schemas.telemetry import (
    AlertClearedPayload,
    AlertPayload,
    PowerStatusPayload,
    SensorReadingPayload,
)
from apn_telemetry.services.ingestion import (
    clear_alerts,
    find_active_alert,
    ingest,
    store_alert,
    store_sensor_reading,
    upsert_active_alert,
)


def _now() -> datetime:
    return datetime.now(UTC)


async def _alerts(session_maker, **filters) -> list[Alert]:
    async with session_maker() as session:
        query = select(Alert)
        for column, value in filters.items():
            query = query.where(getattr(Alert, column) == value)
        result = await session.execute(query)
        return list(result.scalars().all())


async def _readings(session_maker) -> list[SensorReading]:
    async with session_maker() as session:
        result = await session.execute(select(SensorReading))
        return list(result.scalars().all())


class TestSensorReadingIngestion:
    """Zone thresholding and water alert de-duplication."""

    @pytest.mark.asyncio
    async def test_stores_duplicated_zone_flags(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        payload = SensorReadingPayload.model_validate(
            {
                "water": [0, 800, 0, 0],
                "gas": False,
                "temperature": {"temp1": 21.5, "temp2": 22.0},
                "gyro": {"movement": 0.02},
            }
        )

        async with session_maker() as db:
            created = await store_sensor_reading(
                db, device.device_id, user.id, payload, _now()
            )

        [reading] = await _readings(session_maker)
        assert (reading.water_1, reading.water_2, reading.water_3, reading.water_4) == (
            1,
            1,
            0,
            0,
        )
        assert reading.gas_detected is False
        assert reading.temp_1 == 21.5
        assert reading.temp_2 == 22.0
        assert reading.movement == 0.02

        assert len(created) == 1
        assert created[0].alert_type == AlertType.WATER_DETECTED.value
        assert created[0].sensor == "ZONE1"
        assert created[0].value == 1.0

    @pytest.mark.asyncio
    async def test_exactly_500_is_dry(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        payload = SensorReadingPayload.model_validate({"water": [500, 500, 500, 500]})

        async with session_maker() as db:
            created = await store_sensor_reading(
                db, device.device_id, user.id, payload, _now()
            )

        assert created == []
        [reading] = await _readings(session_maker)
        assert reading.water_1 == 0 and reading.water_3 == 0

    @pytest.mark.asyncio
    async def test_repeated_wet_readings_keep_one_active_alert_per_zone(
        self, session_maker, make_user, make_device
    ):
        user = await make_user()
        device = await make_device(user)
        payload = SensorReadingPayload.model_validate({"water": [900, 0, 0, 900]})

        for _ in range(3):
            async with session_maker() as db:
                await store_sensor_reading(db, device.device_id, user.id, payload, _now())

        alerts = await _alerts(session_maker, device_id=device.device_id, is_active=True)
        assert sorted(a.sensor for a in alerts) == ["ZONE1", "ZONE2"]
        assert len(await _readings(session_maker)) == 3

    @pytest.mark.asyncio
    async def test_clear_then_redetect_creates_new_alert(
        self, session_maker, make_user, make_device
    ):
        user = await make_user()
        device = await make_device(user)
        wet = SensorReadingPayload.model_validate({"water": [900, 0, 0, 0]})
        clear = AlertClearedPayload.model_validate(
            {"status": "ALERT_CLEARED", "alert": "WATER_DETECTED", "sensor": "ZONE1"}
        )

        async with session_maker() as db:
            first = await store_sensor_reading(db, device.device_id, user.id, wet, _now())
            await clear_alerts(db, device.device_id, user.id, clear, _now())
            second = await store_sensor_reading(db, device.device_id, user.id, wet, _now())

        assert len(first) == 1 and len(second) == 1
        assert first[0].id != second[0].id

        alerts = await _alerts(session_maker, device_id=device.device_id)
        assert len(alerts) == 2
        assert sum(1 for a in alerts if a.is_active) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_is_swallowed(self):
        db = AsyncMock()
        db.add = lambda obj: None
        db.commit.side_effect = OperationalError("INSERT", {}, Exception("db down"))
        payload = SensorReadingPayload.model_validate({"water": [900, 0, 0, 0]})

        created = await store_sensor_reading(db, "APN-1", None, payload, _now())

        assert created == []
        db.rollback.assert_awaited_once()


class TestAlertIngestion:
    @pytest.mark.asyncio
    async def test_duplicate_alerts_are_not_repeated(
        self, session_maker, make_user, make_device
    ):
        user = await make_user()
        device = await make_device(user)
        payload = AlertPayload.model_validate(
            {"alert": "HIGH_TEMPERATURE", "sensor": "TEMP1", "value": 61.0}
        )

        async with session_maker() as db:
            first = await store_alert(db, device.device_id, user.id, payload, _now())
            second = await store_alert(db, device.device_id, user.id, payload, _now())

        assert len(first) == 1
        assert second == []
        assert len(await _alerts(session_maker, device_id=device.device_id)) == 1

    @pytest.mark.asyncio
    async def test_different_sensor_labels_are_separate_alerts(
        self, session_maker, make_user, make_device
    ):
        user = await make_user()
        device = await make_device(user)

        async with session_maker() as db:
            for sensor in ("TEMP1", "TEMP2", None):
                await store_alert(
                    db,
                    device.device_id,
                    user.id,
                    AlertPayload(alert="HIGH_TEMPERATURE", sensor=sensor),
                    _now(),
                )

        assert len(await _alerts(session_maker, device_id=device.device_id)) == 3

    @pytest.mark.asyncio
    async def test_gas_leak_adds_companion_reading(
        self, session_maker, make_user, make_device
    ):
        user = await make_user()
        device = await make_device(user)
        payload = AlertPayload(alert=AlertType.GAS_LEAK_DETECTED.value)

        async with session_maker() as db:
            await store_alert(db, device.device_id, user.id, payload, _now())
            # A repeat while still active adds nothing
            await store_alert(db, device.device_id, user.id, payload, _now())

        [reading] = await _readings(session_maker)
        assert reading.gas_detected is True
        assert reading.water_1 is None
        assert reading.temp_1 is None

    @pytest.mark.asyncio
    async def test_unknown_alert_types_are_stored(
        self, session_maker, make_user, make_device
    ):
        user = await make_user()
        device = await make_device(user)

        async with session_maker() as db:
            created = await store_alert(
                db, device.device_id, user.id, AlertPayload(alert="SMOKE"), _now()
            )

        assert created[0].alert_type == "SMOKE"


class TestUpsertActiveAlert:
    @pytest.mark.asyncio
    async def test_unique_index_rejects_second_active_row(
        self, session_maker, make_user, make_device
    ):
        """A racing insert that slipped past the pre-check reuses the winner."""
        user = await make_user()
        device = await make_device(user)
        received_at = _now()

        async with session_maker() as db:
            winner, created = await upsert_active_alert(
                db, device.device_id, user.id, "WATER_DETECTED", "ZONE1", 1.0, received_at
            )
            await db.commit()
        assert created is True

        real_lookup = find_active_alert
        lookups = 0

        async def stale_first_lookup(*args, **kwargs):
            nonlocal lookups
            lookups += 1
            if lookups == 1:
                return None
            return await real_lookup(*args, **kwargs)

        async with session_maker() as db:
            with patch(
                "apn_telemetry.services.ingestion.find_active_alert",
                side_effect=stale_first_lookup,
            ):
                alert, created = await upsert_active_alert(
                    db,
                    device.device_id,
                    user.id,
                    "WATER_DETECTED",
                    "ZONE1",
                    1.0,
                    received_at,
                )
            await db.commit()

        assert lookups == 2
        assert created is False
        assert alert.id == winner.id
        async with session_maker() as db:
            count = await db.scalar(select(func.count()).select_from(Alert))
        assert count == 1


class TestClearAlerts:
    """Scope narrowing of ALERT_CLEARED messages."""

    async def _seed(self, session_maker, device, user):
        async with session_maker() as db:
            for alert_type, sensor in (
                ("WATER_DETECTED", "ZONE1"),
                ("WATER_DETECTED", "ZONE2"),
                ("HIGH_TEMPERATURE", "TEMP1"),
            ):
                await store_alert(
                    db,
                    device.device_id,
                    user.id,
                    AlertPayload(alert=alert_type, sensor=sensor),
                    _now(),
                )

    async def _clear(self, session_maker, device, user, **fields):
        payload = AlertClearedPayload.model_validate({"status": "ALERT_CLEARED", **fields})
        async with session_maker() as db:
            return await clear_alerts(db, device.device_id, user.id, payload, _now())

    @pytest.mark.asyncio
    async def test_clear_all(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        await self._seed(session_maker, device, user)

        assert await self._clear(session_maker, device, user) == []

        alerts = await _alerts(session_maker, device_id=device.device_id)
        assert all(not a.is_active for a in alerts)
        assert all(a.cleared_at is not None for a in alerts)

    @pytest.mark.asyncio
    async def test_clear_by_type(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        await self._seed(session_maker, device, user)

        await self._clear(session_maker, device, user, alertType="WATER_DETECTED")

        active = await _alerts(session_maker, device_id=device.device_id, is_active=True)
        assert [a.alert_type for a in active] == ["HIGH_TEMPERATURE"]

    @pytest.mark.asyncio
    async def test_clear_by_type_and_sensor(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        await self._seed(session_maker, device, user)

        await self._clear(
            session_maker, device, user, alert="WATER_DETECTED", sensor="ZONE2"
        )

        active = await _alerts(session_maker, device_id=device.device_id, is_active=True)
        assert sorted(a.sensor for a in active) == ["TEMP1", "ZONE1"]

    @pytest.mark.asyncio
    async def test_other_devices_are_untouched(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        other = await make_device(user)
        await self._seed(session_maker, device, user)
        await self._seed(session_maker, other, user)

        await self._clear(session_maker, device, user)

        assert len(await _alerts(session_maker, device_id=other.device_id, is_active=True)) == 3


class TestPowerStatusIngestion:
    @pytest.mark.asyncio
    async def test_stores_power_only_reading(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        payload = PowerStatusPayload.model_validate({"power": {"mains": False, "battery": 71}})

        async with session_maker() as db:
            created = await ingest(db, device.device_id, user.id, payload, _now())

        assert created == []
        [reading] = await _readings(session_maker)
        assert reading.power_status == {"mains": False, "battery": 71}
        assert reading.water_1 is None
        assert reading.gas_detected is None

    @pytest.mark.asyncio
    async def test_received_at_is_preserved(self, session_maker, make_user, make_device):
        user = await make_user()
        device = await make_device(user)
        received_at = _now() - timedelta(minutes=3)

        async with session_maker() as db:
            await ingest(
                db,
                device.device_id,
                user.id,
                PowerStatusPayload(power=True),
                received_at,
            )

        [reading] = await _readings(session_maker)
        assert reading.received_at.replace(tzinfo=UTC) == received_at
