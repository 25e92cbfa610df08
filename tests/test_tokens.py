"""Tests for sync state persistence and status transitions."""

from datetime import timedelta

import pytest

from resource_sync.sync.models import SyncStatus, utcnow
from resource_sync.sync.tokens import SyncTokenStore

USER = "user-1"
FAMILY = "calendar"


@pytest.mark.asyncio
async def test_get_or_create_is_idempotent(db):
    tokens = SyncTokenStore(db)
    first = await tokens.get_or_create(USER, FAMILY)
    second = await tokens.get_or_create(USER, FAMILY)

    assert first.status is SyncStatus.IDLE
    assert second.error_count == 0
    row = await db.fetchone("SELECT COUNT(*) FROM sync_state")
    assert row[0] == 1


@pytest.mark.asyncio
async def test_compare_and_set_only_from_expected(db):
    tokens = SyncTokenStore(db)
    await tokens.get_or_create(USER, FAMILY)

    assert await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.SYNCING)
    # Second claimant loses
    assert not await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.SYNCING)
    assert (await tokens.get(USER, FAMILY)).status is SyncStatus.SYNCING


@pytest.mark.asyncio
async def test_release_only_clears_active_status(db):
    tokens = SyncTokenStore(db)
    await tokens.get_or_create(USER, FAMILY)
    assert not await tokens.release(USER, FAMILY)

    await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.FULL_SYNC)
    assert await tokens.release(USER, FAMILY)
    assert (await tokens.get(USER, FAMILY)).status is SyncStatus.IDLE


@pytest.mark.asyncio
async def test_reset_stale_resets_only_old_active_rows(db):
    tokens = SyncTokenStore(db)
    now = utcnow()
    await tokens.get_or_create("old", FAMILY)
    await tokens.get_or_create("fresh", FAMILY)
    await tokens.get_or_create("failed", FAMILY)
    await tokens.compare_and_set_status("old", FAMILY, [SyncStatus.IDLE], SyncStatus.INCREMENTAL_SYNC, now - timedelta(hours=2))
    await tokens.compare_and_set_status("fresh", FAMILY, [SyncStatus.IDLE], SyncStatus.FULL_SYNC, now)
    await tokens.compare_and_set_status("failed", FAMILY, [SyncStatus.IDLE], SyncStatus.ERROR, now - timedelta(hours=2))

    count = await tokens.reset_stale(now - timedelta(minutes=30), now)

    assert count == 1
    assert (await tokens.get("old", FAMILY)).status is SyncStatus.IDLE
    assert (await tokens.get("fresh", FAMILY)).status is SyncStatus.FULL_SYNC
    assert (await tokens.get("failed", FAMILY)).status is SyncStatus.ERROR


@pytest.mark.asyncio
async def test_sub_resource_tokens_save_and_clear(db):
    tokens = SyncTokenStore(db)
    await tokens.get_or_create(USER, FAMILY)
    await tokens.save_resource_token(USER, FAMILY, "list-token")
    await tokens.save_sub_resource_token(USER, FAMILY, "cal-1", "t1")
    await tokens.save_sub_resource_token(USER, FAMILY, "cal-1", "t2")
    await tokens.save_sub_resource_token(USER, FAMILY, "cal-2", "u1")

    state = await tokens.get(USER, FAMILY)
    assert state.resource_sync_token == "list-token"
    assert state.sub_resource_tokens == {"cal-1": "t2", "cal-2": "u1"}

    await tokens.clear_sub_resource_token(USER, FAMILY, "cal-1")
    assert (await tokens.get(USER, FAMILY)).sub_resource_tokens == {"cal-2": "u1"}

    await tokens.clear_all_tokens(USER, FAMILY)
    state = await tokens.get(USER, FAMILY)
    assert state.resource_sync_token is None
    assert state.sub_resource_tokens == {}


@pytest.mark.asyncio
async def test_mark_success_records_watermarks(db):
    tokens = SyncTokenStore(db)
    now = utcnow()
    await tokens.get_or_create(USER, FAMILY)

    await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.FULL_SYNC)
    assert await tokens.mark_success(USER, FAMILY, SyncStatus.FULL_SYNC, now)
    state = await tokens.get(USER, FAMILY)
    assert state.status is SyncStatus.IDLE
    assert state.last_full_sync_at == now
    assert state.last_sync_at == now

    later = now + timedelta(minutes=5)
    await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.INCREMENTAL_SYNC)
    await tokens.mark_success(USER, FAMILY, SyncStatus.INCREMENTAL_SYNC, later)
    state = await tokens.get(USER, FAMILY)
    assert state.last_full_sync_at == now
    assert state.last_sync_at == later


@pytest.mark.asyncio
async def test_outcomes_ignored_when_key_not_held(db):
    tokens = SyncTokenStore(db)
    await tokens.get_or_create(USER, FAMILY)

    assert not await tokens.mark_failure(USER, FAMILY, "boom", 1, False, None)
    assert (await tokens.get(USER, FAMILY)).error_count == 0


@pytest.mark.asyncio
async def test_mark_failure_then_reset(db):
    tokens = SyncTokenStore(db)
    now = utcnow()
    await tokens.get_or_create(USER, FAMILY)
    await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.SYNCING)
    await tokens.mark_failure(USER, FAMILY, "boom", 5, True, None, now)

    state = await tokens.get(USER, FAMILY)
    assert state.status is SyncStatus.PAUSED
    assert state.error_count == 5

    assert await tokens.reset(USER, FAMILY)
    state = await tokens.get(USER, FAMILY)
    assert state.status is SyncStatus.IDLE
    assert state.error_count == 0
    assert state.error_message is None


@pytest.mark.asyncio
async def test_reset_refused_while_running(db):
    tokens = SyncTokenStore(db)
    await tokens.get_or_create(USER, FAMILY)
    await tokens.compare_and_set_status(USER, FAMILY, [SyncStatus.IDLE], SyncStatus.FULL_SYNC)

    assert not await tokens.reset(USER, FAMILY)
    assert (await tokens.get(USER, FAMILY)).status is SyncStatus.FULL_SYNC


@pytest.mark.asyncio
async def test_list_schedulable_skips_paused_and_backing_off(db):
    tokens = SyncTokenStore(db)
    now = utcnow()
    for user in ("ready", "paused", "waiting", "due"):
        await tokens.get_or_create(user, FAMILY)
        await tokens.compare_and_set_status(user, FAMILY, [SyncStatus.IDLE], SyncStatus.SYNCING)
    await tokens.mark_success("ready", FAMILY, SyncStatus.SYNCING, now)
    await tokens.mark_paused("paused", FAMILY, "auth", now)
    await tokens.mark_failure("waiting", FAMILY, "boom", 1, False, now + timedelta(minutes=5), now)
    await tokens.mark_failure("due", FAMILY, "boom", 1, False, now - timedelta(seconds=1), now)

    assert await tokens.list_schedulable(now) == [("due", FAMILY), ("ready", FAMILY)]


@pytest.mark.asyncio
async def test_webhook_mirror(db):
    tokens = SyncTokenStore(db)
    now = utcnow()
    await tokens.get_or_create(USER, FAMILY)
    await tokens.set_webhook(USER, FAMILY, "chan-1", "res-1", now)

    await tokens.clear_webhook(USER, FAMILY, "other-channel")
    assert (await tokens.get(USER, FAMILY)).webhook_channel_id == "chan-1"

    await tokens.clear_webhook(USER, FAMILY, "chan-1")
    state = await tokens.get(USER, FAMILY)
    assert state.webhook_channel_id is None
    assert state.webhook_expires_at is None
