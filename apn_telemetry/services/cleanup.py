"""Housekeeping: purge archived alerts past their retention window."""

from datetime import UTC, datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from apn_telemetry.config import settings
from apn_telemetry.database import get_db_session
from apn_telemetry.logging_config import get_logger
from apn_telemetry.models.alert import ArchivedAlert

logger = get_logger(__name__)


async def cleanup_archived_alerts(db: AsyncSession, retention_days: int = 7) -> int:
    """Delete archived alerts archived more than ``retention_days`` ago.

    Returns:
        Number of rows deleted.
    """
    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    logger.info("Starting archived alert cleanup", cutoff=cutoff.isoformat())

    result = await db.execute(
        delete(ArchivedAlert).where(ArchivedAlert.archived_at < cutoff)
    )
    await db.commit()

    logger.info("Archived alert cleanup completed", deleted=result.rowcount)
    return result.rowcount


async def run_cleanup_now() -> int:
    """Run the purge immediately with the configured retention window."""
    try:
        async with get_db_session() as db:
            return await cleanup_archived_alerts(db, settings.archived_alert_retention_days)
    except Exception:
        logger.exception("Archived alert cleanup failed")
        return 0
