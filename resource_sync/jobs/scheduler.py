"""APScheduler setup for background jobs."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from resource_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


def setup_scheduler(engine: SyncEngine, start: bool = True) -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    settings = engine.settings
    scheduler = AsyncIOScheduler()

    # Periodic sync job
    scheduler.add_job(
        "resource_sync.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        args=[engine],
        id="periodic_sync",
        name="Periodic Sync",
        replace_existing=True,
    )

    if settings.enable_webhooks:
        scheduler.add_job(
            "resource_sync.jobs.webhook_renewal:renew_expiring_webhooks",
            trigger=IntervalTrigger(minutes=settings.webhook_renewal_minutes),
            args=[engine],
            id="webhook_renewal",
            name="Webhook Renewal",
            replace_existing=True,
        )
    else:
        logger.info("Webhook renewal job disabled (ENABLE_WEBHOOKS=false)")

    # Retention cleanup - daily at 3 AM
    scheduler.add_job(
        "resource_sync.jobs.cleanup:run_retention_cleanup",
        trigger=CronTrigger(hour=3, minute=0),
        args=[engine],
        id="retention_cleanup",
        name="Retention Cleanup",
        replace_existing=True,
    )

    if start:
        scheduler.start()
        logger.info("Background scheduler started")

    return scheduler


def shutdown_scheduler(scheduler: Optional[AsyncIOScheduler]) -> None:
    """Shutdown the scheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
