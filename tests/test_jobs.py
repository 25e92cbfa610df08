"""Tests for the scheduled jobs."""

from datetime import timedelta

import pytest

from resource_sync.config import Settings
from resource_sync.jobs.cleanup import run_retention_cleanup
from resource_sync.jobs.scheduler import setup_scheduler, shutdown_scheduler
from resource_sync.jobs.sync_job import acquire_job_lock, release_job_lock, run_periodic_sync
from resource_sync.jobs.webhook_renewal import renew_expiring_webhooks
from resource_sync.sync.engine import SyncEngine
from resource_sync.sync.models import SyncStatus, format_timestamp, utcnow


async def _hold(engine, user_id, family="calendar"):
    await engine.tokens.get_or_create(user_id, family)
    await engine.tokens.compare_and_set_status(user_id, family, [SyncStatus.IDLE], SyncStatus.SYNCING)


@pytest.mark.asyncio
async def test_job_lock_is_exclusive(db):
    assert await acquire_job_lock(db, "periodic_sync")
    assert not await acquire_job_lock(db, "periodic_sync")
    assert await acquire_job_lock(db, "webhook_renewal")

    await release_job_lock(db, "periodic_sync")
    assert await acquire_job_lock(db, "periodic_sync")


@pytest.mark.asyncio
async def test_stale_job_lock_is_taken_over(db):
    async with db.transaction() as conn:
        await conn.execute(
            "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
            ("periodic_sync", format_timestamp(utcnow() - timedelta(hours=2)), "dead-host:1"),
        )

    assert await acquire_job_lock(db, "periodic_sync")


@pytest.mark.asyncio
async def test_periodic_sync_runs_due_accounts(engine, provider):
    await engine.tokens.get_or_create("ready", "calendar")

    await _hold(engine, "paused")
    await engine.tokens.mark_paused("paused", "calendar", "auth")

    await _hold(engine, "waiting")
    await engine.tokens.mark_rate_limited("waiting", "calendar", "slow down", utcnow() + timedelta(hours=1))

    # Not an enabled family
    await engine.tokens.get_or_create("ready", "mailbox")

    summary = await run_periodic_sync(engine)

    assert summary == {"scheduled": 1, "succeeded": 1, "failed": 0, "skipped": 0}
    assert (await engine.get_sync_state("ready", "calendar")).last_sync_at is not None
    assert (await engine.get_sync_state("waiting", "calendar")).last_sync_at is None


@pytest.mark.asyncio
async def test_periodic_sync_recovers_crashed_runs(engine):
    await engine.tokens.get_or_create("crashed", "calendar")
    await engine.tokens.compare_and_set_status(
        "crashed", "calendar", [SyncStatus.IDLE], SyncStatus.FULL_SYNC, utcnow() - timedelta(hours=3)
    )

    summary = await run_periodic_sync(engine)

    assert summary["succeeded"] == 1


@pytest.mark.asyncio
async def test_periodic_sync_counts_failures(engine, provider):
    await engine.tokens.get_or_create("user-1", "calendar")
    provider.list_error = RuntimeError("unexpected")

    summary = await run_periodic_sync(engine)

    assert summary["failed"] == 1
    assert (await engine.get_sync_state("user-1", "calendar")).status is SyncStatus.ERROR


@pytest.mark.asyncio
async def test_periodic_sync_skips_when_locked(engine, provider):
    await engine.tokens.get_or_create("user-1", "calendar")
    assert await acquire_job_lock(engine.db, "periodic_sync")

    summary = await run_periodic_sync(engine)

    assert summary["scheduled"] == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_webhook_renewal_job(engine, mocker):
    renew = mocker.patch.object(engine, "renew_channels", return_value={"checked": 0, "renewed": 0, "failed": 0})

    assert await renew_expiring_webhooks(engine) == {"checked": 0, "renewed": 0, "failed": 0}
    renew.assert_awaited_once()

    # Lock released afterwards
    assert await acquire_job_lock(engine.db, "webhook_renewal")
    assert await renew_expiring_webhooks(engine) == {}


@pytest.mark.asyncio
async def test_retention_cleanup_job(engine):
    summary = await run_retention_cleanup(engine)
    assert set(summary) == {"old_sync_logs", "expired_channels", "debounce_entries"}


@pytest.mark.asyncio
async def test_scheduler_registers_jobs(engine):
    scheduler = setup_scheduler(engine, start=False)

    assert {job.id for job in scheduler.get_jobs()} == {"periodic_sync", "webhook_renewal", "retention_cleanup"}
    assert scheduler.get_job("periodic_sync").args == (engine,)
    shutdown_scheduler(scheduler)


@pytest.mark.asyncio
async def test_scheduler_without_webhooks(db, provider, credentials):
    settings = Settings(_env_file=None, database_path=":memory:", enabled_families="calendar", enable_webhooks=False)
    engine = SyncEngine(db, settings, {"calendar": lambda _token: provider}, credentials)

    scheduler = setup_scheduler(engine, start=False)

    assert "webhook_renewal" not in {job.id for job in scheduler.get_jobs()}
