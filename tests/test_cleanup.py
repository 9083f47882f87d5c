"""Tests for archived alert purging and its scheduling."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from apn_telemetry.models import ArchivedAlert
from apn_telemetry.services.cleanup import cleanup_archived_alerts, run_cleanup_now
from apn_telemetry.services.scheduler import start_scheduler, stop_scheduler


def _archived(user, days_ago: float) -> ArchivedAlert:
    now = datetime.now(UTC)
    return ArchivedAlert(
        original_alert_id=uuid.uuid4(),
        device_id="APN-1",
        user_id=user.id,
        alert_type="WATER_DETECTED",
        sensor="ZONE1",
        was_active=False,
        received_at=now - timedelta(days=days_ago + 1),
        archived_at=now - timedelta(days=days_ago),
    )


class TestCleanupArchivedAlerts:
    @pytest.mark.asyncio
    async def test_deletes_only_expired(self, db, make_user):
        user = await make_user()
        db.add_all([_archived(user, 10), _archived(user, 8), _archived(user, 2)])
        await db.commit()

        deleted = await cleanup_archived_alerts(db, retention_days=7)

        assert deleted == 2
        remaining = (await db.execute(select(ArchivedAlert))).scalars().all()
        assert len(remaining) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, db):
        assert await cleanup_archived_alerts(db, retention_days=7) == 0

    @pytest.mark.asyncio
    async def test_run_now_swallows_errors(self):
        with patch(
            "apn_telemetry.services.cleanup.cleanup_archived_alerts",
            new_callable=AsyncMock,
            side_effect=RuntimeError("db down"),
        ), patch("apn_telemetry.services.cleanup.get_db_session") as session:
            session.return_value.__aenter__ = AsyncMock(return_value=AsyncMock())
            session.return_value.__aexit__ = AsyncMock(return_value=False)

            assert await run_cleanup_now() == 0


class TestScheduler:
    @pytest.mark.asyncio
    async def test_registers_cleanup_job(self):
        scheduler = start_scheduler()
        try:
            job = scheduler.get_job("archived_alert_cleanup")
            assert job is not None
            assert job.func is run_cleanup_now
        finally:
            stop_scheduler(scheduler)
        assert scheduler.running is False
