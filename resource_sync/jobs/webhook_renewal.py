"""Webhook renewal job."""

import logging

from resource_sync.jobs.sync_job import acquire_job_lock, release_job_lock
from resource_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


async def renew_expiring_webhooks(engine: SyncEngine) -> dict:
    """Replace every channel whose lease ends within the renewal buffer."""
    if not await acquire_job_lock(engine.db, "webhook_renewal"):
        logger.debug("Webhook renewal already running, skipping")
        return {}

    try:
        return await engine.renew_channels()
    finally:
        await release_job_lock(engine.db, "webhook_renewal")
