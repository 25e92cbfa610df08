"""Periodic sync job."""

import logging
import os
import socket
from datetime import timedelta

import aiosqlite

from resource_sync.database import Database
from resource_sync.sync.engine import SyncEngine
from resource_sync.sync.models import format_timestamp, utcnow

logger = logging.getLogger(__name__)


async def run_periodic_sync(engine: SyncEngine) -> dict:
    """Run an auto-mode sync for every account that is due."""
    summary = {"scheduled": 0, "succeeded": 0, "failed": 0, "skipped": 0}

    # Acquire lock
    if not await acquire_job_lock(engine.db, "periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return summary

    try:
        await engine.recover_stale()

        due = await engine.tokens.list_schedulable(utcnow())
        logger.info(f"Running periodic sync for {len(due)} account(s)")

        for user_id, family in due:
            if family not in engine.families:
                logger.debug(f"Skipping {family} user {user_id}: family not enabled")
                continue
            summary["scheduled"] += 1
            try:
                result = await engine.run(user_id, family)
            except Exception as e:
                logger.error(f"Error syncing {family} for user {user_id}: {e}")
                summary["failed"] += 1
                continue
            if result.succeeded:
                summary["succeeded"] += 1
            elif result.outcome == "skipped":
                summary["skipped"] += 1
            else:
                summary["failed"] += 1

        logger.info(f"Periodic sync completed: {summary}")
        return summary

    finally:
        await release_job_lock(engine.db, "periodic_sync")


async def acquire_job_lock(db: Database, job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    now = utcnow()
    cutoff = format_timestamp(now - timedelta(minutes=timeout_minutes))

    # First, try to clean up stale locks
    async with db.transaction() as conn:
        await conn.execute(
            """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
            (job_name, cutoff)
        )

    # Now try to acquire the lock
    try:
        async with db.transaction() as conn:
            await conn.execute(
                """INSERT INTO job_locks (job_name, locked_at, locked_by)
                   VALUES (?, ?, ?)""",
                (job_name, format_timestamp(now), f"{socket.gethostname()}:{os.getpid()}")
            )
        return True
    except aiosqlite.IntegrityError:
        # Lock already held by another process
        return False


async def release_job_lock(db: Database, job_name: str) -> None:
    """Release a job lock."""
    async with db.transaction() as conn:
        await conn.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
