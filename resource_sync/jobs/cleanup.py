"""Retention cleanup job."""

import logging

from resource_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


async def run_retention_cleanup(engine: SyncEngine) -> dict:
    """
    Run retention cleanup according to policy.

    Retention policy:
    - Audit/sync log entries: ``audit_log_retention_days``
    - Webhook channels: removed once their lease has expired
    - Debounce entries: older than twice the debounce window
    """
    return await engine.cleanup()
