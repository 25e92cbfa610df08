"""Tests for database module and the SQLite local store."""

import json

import pytest

from resource_sync.database import Database
from resource_sync.sync.models import EntityStatus, RemoteRecord, SubResource
from resource_sync.sync.reconciler import map_record
from resource_sync.sync.store import SqliteLocalStore

USER = "user-1"
FAMILY = "calendar"


@pytest.mark.asyncio
async def test_schema_tables_exist(db):
    """Test that all required tables exist."""
    tables = [
        "sync_state",
        "sub_resource_tokens",
        "sub_resources",
        "entities",
        "webhook_channels",
        "credentials",
        "sync_log",
        "job_locks",
    ]

    for table in tables:
        result = await db.fetchone(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (table,)
        )
        assert result is not None, f"Table {table} does not exist"


@pytest.mark.asyncio
async def test_connection_requires_connect():
    database = Database(":memory:")
    with pytest.raises(RuntimeError):
        database.connection
    await database.connect()
    await database.ping()
    await database.close()


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(db):
    with pytest.raises(ValueError):
        async with db.transaction() as conn:
            await conn.execute(
                "INSERT INTO job_locks (job_name, locked_at) VALUES ('x', '2026-01-01')"
            )
            raise ValueError("boom")

    assert await db.fetchone("SELECT * FROM job_locks WHERE job_name = 'x'") is None


@pytest.mark.asyncio
async def test_upsert_sub_resources_keeps_user_selection(db):
    store = SqliteLocalStore(db)
    async with store.transaction():
        await store.upsert_sub_resources(USER, FAMILY, [SubResource(provider_id="a", name="A", is_selected=True)])
        await store.set_selected(USER, FAMILY, "a", False)
        rows = await store.upsert_sub_resources(
            USER, FAMILY, [SubResource(provider_id="a", name="Renamed", is_selected=True)]
        )

    assert len(rows) == 1
    assert rows[0].name == "Renamed"
    assert rows[0].is_selected is False


@pytest.mark.asyncio
async def test_mark_sub_resources_inaccessible(db):
    store = SqliteLocalStore(db)
    async with store.transaction():
        await store.upsert_sub_resources(
            USER, FAMILY, [SubResource(provider_id="a", is_selected=True), SubResource(provider_id="b", is_selected=True)]
        )
        removed = await store.mark_sub_resources_inaccessible(USER, FAMILY, ["a"])

    assert removed == ["b"]
    subs = {s.provider_id: s for s in await store.list_sub_resources(USER, FAMILY)}
    assert subs["a"].participates
    assert not subs["b"].is_accessible
    assert not subs["b"].participates


@pytest.mark.asyncio
async def test_upsert_entities_never_lowers_stored_revision(db):
    store = SqliteLocalStore(db)
    async with store.transaction():
        await store.upsert_entities(
            USER, FAMILY, "cal", [map_record(RemoteRecord(provider_id="e", revision=5, payload={"v": "new"}), "cal")]
        )
    async with store.transaction():
        written = await store.upsert_entities(
            USER, FAMILY, "cal", [map_record(RemoteRecord(provider_id="e", revision=3, payload={"v": "old"}), "cal")]
        )

    entity = await store.get_entity(USER, FAMILY, "cal", "e")
    assert written == 0
    assert entity.revision == 5
    assert entity.payload == {"v": "new"}


@pytest.mark.asyncio
async def test_soft_delete_and_revive(db):
    store = SqliteLocalStore(db)
    async with store.transaction():
        await store.upsert_entities(USER, FAMILY, "cal", [map_record(RemoteRecord(provider_id="e", revision=1), "cal")])
        deleted = await store.soft_delete_entities(USER, FAMILY, "cal", {"e": 1, "missing": 1})

    assert deleted == 1
    entity = await store.get_entity(USER, FAMILY, "cal", "e")
    assert entity.status is EntityStatus.CANCELLED
    assert await store.count_entities(USER, FAMILY) == 0
    assert await store.count_entities(USER, FAMILY, include_cancelled=True) == 1

    async with store.transaction():
        await store.upsert_entities(USER, FAMILY, "cal", [map_record(RemoteRecord(provider_id="e", revision=2), "cal")])

    row = await db.fetchone("SELECT status, deleted_at FROM entities WHERE provider_id = 'e'")
    assert row["status"] == "active"
    assert row["deleted_at"] is None


@pytest.mark.asyncio
async def test_soft_delete_raises_stored_revision(db):
    """An upsert older than the cancellation cannot revive the row."""
    store = SqliteLocalStore(db)
    async with store.transaction():
        await store.upsert_entities(USER, FAMILY, "cal", [map_record(RemoteRecord(provider_id="e", revision=100), "cal")])
        await store.soft_delete_entities(USER, FAMILY, "cal", {"e": 300})
        written = await store.upsert_entities(
            USER, FAMILY, "cal", [map_record(RemoteRecord(provider_id="e", revision=200), "cal")]
        )

    entity = await store.get_entity(USER, FAMILY, "cal", "e")
    assert written == 0
    assert entity.status is EntityStatus.CANCELLED
    assert entity.revision == 300

    async with store.transaction():
        again = await store.soft_delete_entities(USER, FAMILY, "cal", {"e": 50})
    assert again == 0
    assert (await store.get_entity(USER, FAMILY, "cal", "e")).revision == 300


@pytest.mark.asyncio
async def test_entity_json_columns_round_trip(db):
    store = SqliteLocalStore(db)
    record = RemoteRecord(
        provider_id="e",
        revision=1,
        attendees=[{"email": "me@example.com", "self": True, "responseStatus": "accepted"}],
        recurrence=["RRULE:FREQ=DAILY"],
    )
    async with store.transaction():
        await store.upsert_entities(USER, FAMILY, "cal", [map_record(record, "cal")])

    row = await db.fetchone("SELECT attendees, response_tally FROM entities WHERE provider_id = 'e'")
    assert json.loads(row["attendees"])[0]["is_self"] is True
    assert json.loads(row["response_tally"])["accepted"] == 1


@pytest.mark.asyncio
async def test_get_entity_revisions_handles_many_ids(db):
    store = SqliteLocalStore(db)
    async with store.transaction():
        await store.upsert_entities(
            USER,
            FAMILY,
            "cal",
            [map_record(RemoteRecord(provider_id=f"e{i}", revision=i + 1), "cal") for i in range(600)],
        )

    revisions = await store.get_entity_revisions(USER, FAMILY, "cal", [f"e{i}" for i in range(700)])
    assert len(revisions) == 600
    assert revisions["e599"] == 600
