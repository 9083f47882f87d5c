"""Background job scheduler.

APScheduler runs the housekeeping jobs on the application's event loop.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apn_telemetry.config import settings
from apn_telemetry.logging_config import get_logger
from apn_telemetry.services.cleanup import run_cleanup_now

logger = get_logger(__name__)


def start_scheduler() -> AsyncIOScheduler:
    """Create and start the scheduler with the configured jobs.

    Returns:
        The started scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone=settings.cleanup_timezone)

    if settings.cleanup_enabled:
        scheduler.add_job(
            run_cleanup_now,
            trigger=CronTrigger.from_crontab(
                settings.cleanup_cron_schedule,
                timezone=settings.cleanup_timezone,
            ),
            id="archived_alert_cleanup",
            name="Archived Alert Cleanup",
            replace_existing=True,
        )
        logger.info(
            "Scheduled archived alert cleanup",
            schedule=settings.cleanup_cron_schedule,
            timezone=settings.cleanup_timezone,
        )

    scheduler.start()
    logger.info("Background scheduler started")
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    """Stop the background job scheduler."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
