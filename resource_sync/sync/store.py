"""SQLite-backed Local Store for sub-resources and entities."""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Mapping, Optional

import aiosqlite

from resource_sync.database import Database
from resource_sync.sync.interfaces import LocalStore
from resource_sync.sync.models import (
    EntityKind,
    EntityRecord,
    EntityStatus,
    SubResource,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)


class SqliteLocalStore(LocalStore):
    """Local Store over the shared :class:`~resource_sync.database.Database`.

    Write methods run on the connection handed out by :meth:`transaction` and
    never commit on their own.
    """

    def __init__(self, db: Database):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        async with self.db.transaction() as conn:
            yield conn

    async def list_sub_resources(self, user_id: str, family: str) -> list[SubResource]:
        rows = await self.db.fetchall(
            """SELECT * FROM sub_resources WHERE user_id = ? AND family = ?
               ORDER BY is_primary DESC, provider_id""",
            (user_id, family),
        )
        return [_row_to_sub_resource(row) for row in rows]

    async def upsert_sub_resources(
        self, user_id: str, family: str, rows: Iterable[SubResource]
    ) -> list[SubResource]:
        now = format_timestamp(utcnow())
        for sub in rows:
            # is_selected is the user's choice once the row exists; the provider
            # value only seeds it.
            await self.db.connection.execute(
                """INSERT INTO sub_resources
                   (user_id, family, provider_id, name, is_selected, is_primary, is_hidden, is_accessible, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, TRUE, ?)
                   ON CONFLICT(user_id, family, provider_id) DO UPDATE SET
                   name = excluded.name,
                   is_primary = excluded.is_primary,
                   is_hidden = excluded.is_hidden,
                   is_accessible = TRUE,
                   updated_at = excluded.updated_at""",
                (user_id, family, sub.provider_id, sub.name, sub.is_selected,
                 sub.is_primary, sub.is_hidden, now),
            )
        return await self.list_sub_resources(user_id, family)

    async def mark_sub_resources_inaccessible(
        self, user_id: str, family: str, keep_provider_ids: Iterable[str]
    ) -> list[str]:
        keep = set(keep_provider_ids)
        current = await self.list_sub_resources(user_id, family)
        removed = [s.provider_id for s in current if s.is_accessible and s.provider_id not in keep]
        now = format_timestamp(utcnow())
        for provider_id in removed:
            await self.db.connection.execute(
                """UPDATE sub_resources SET is_accessible = FALSE, updated_at = ?
                   WHERE user_id = ? AND family = ? AND provider_id = ?""",
                (now, user_id, family, provider_id),
            )
        if removed:
            logger.info(f"Marked {len(removed)} {family} sub-resource(s) inaccessible for user {user_id}")
        return removed

    async def set_selected(self, user_id: str, family: str, provider_id: str, selected: bool) -> bool:
        cursor = await self.db.connection.execute(
            """UPDATE sub_resources SET is_selected = ?, updated_at = ?
               WHERE user_id = ? AND family = ? AND provider_id = ?""",
            (selected, format_timestamp(utcnow()), user_id, family, provider_id),
        )
        return cursor.rowcount == 1

    async def get_entity_revisions(
        self, user_id: str, family: str, sub_resource_id: str, provider_ids: Iterable[str]
    ) -> dict[str, int]:
        ids = list(dict.fromkeys(provider_ids))
        revisions: dict[str, int] = {}
        # Stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ", ".join("?" for _ in chunk)
            rows = await self.db.fetchall(
                f"""SELECT provider_id, revision FROM entities
                    WHERE user_id = ? AND family = ? AND sub_resource_id = ?
                    AND provider_id IN ({placeholders})""",
                (user_id, family, sub_resource_id, *chunk),
            )
            revisions.update({row["provider_id"]: row["revision"] for row in rows})
        return revisions

    async def upsert_entities(
        self, user_id: str, family: str, sub_resource_id: str, rows: Iterable[EntityRecord]
    ) -> int:
        now = format_timestamp(utcnow())
        written = 0
        for record in rows:
            # The WHERE clause keeps a stored revision from ever decreasing.
            cursor = await self.db.connection.execute(
                """INSERT INTO entities
                   (user_id, family, sub_resource_id, provider_id, revision, status, kind, parent_id,
                    recurrence, attendees, response_tally, self_response, meeting_url, payload,
                    provider_updated_at, deleted_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
                   ON CONFLICT(user_id, family, sub_resource_id, provider_id) DO UPDATE SET
                   revision = excluded.revision,
                   status = 'active',
                   kind = excluded.kind,
                   parent_id = excluded.parent_id,
                   recurrence = excluded.recurrence,
                   attendees = excluded.attendees,
                   response_tally = excluded.response_tally,
                   self_response = excluded.self_response,
                   meeting_url = excluded.meeting_url,
                   payload = excluded.payload,
                   provider_updated_at = excluded.provider_updated_at,
                   deleted_at = NULL,
                   updated_at = excluded.updated_at
                   WHERE excluded.revision > entities.revision""",
                (
                    user_id,
                    family,
                    sub_resource_id,
                    record.provider_id,
                    record.revision,
                    record.kind.value,
                    record.parent_id,
                    json.dumps(record.recurrence),
                    json.dumps(record.attendees),
                    json.dumps(record.response_tally),
                    record.self_response,
                    record.meeting_url,
                    json.dumps(record.payload, default=str),
                    format_timestamp(record.updated_at),
                    now,
                ),
            )
            written += cursor.rowcount
        return written

    async def soft_delete_entities(
        self, user_id: str, family: str, sub_resource_id: str, deletions: Mapping[str, int]
    ) -> int:
        now = format_timestamp(utcnow())
        deleted = 0
        for provider_id, revision in deletions.items():
            # The revision guard on upserts keeps older replays from reviving the row
            await self.db.connection.execute(
                """UPDATE entities SET revision = ?
                   WHERE user_id = ? AND family = ? AND sub_resource_id = ? AND provider_id = ?
                   AND revision < ?""",
                (revision, user_id, family, sub_resource_id, provider_id, revision),
            )
            cursor = await self.db.connection.execute(
                """UPDATE entities SET status = 'cancelled', deleted_at = ?, updated_at = ?
                   WHERE user_id = ? AND family = ? AND sub_resource_id = ? AND provider_id = ?
                   AND status != 'cancelled'""",
                (now, now, user_id, family, sub_resource_id, provider_id),
            )
            deleted += cursor.rowcount
        return deleted

    async def get_entity(
        self, user_id: str, family: str, sub_resource_id: str, provider_id: str
    ) -> Optional[EntityRecord]:
        row = await self.db.fetchone(
            """SELECT * FROM entities
               WHERE user_id = ? AND family = ? AND sub_resource_id = ? AND provider_id = ?""",
            (user_id, family, sub_resource_id, provider_id),
        )
        return _row_to_entity(row) if row else None

    async def count_entities(self, user_id: str, family: str, include_cancelled: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM entities WHERE user_id = ? AND family = ?"
        if not include_cancelled:
            sql += " AND status = 'active'"
        row = await self.db.fetchone(sql, (user_id, family))
        return row[0]


def _row_to_sub_resource(row: aiosqlite.Row) -> SubResource:
    return SubResource(
        id=row["id"],
        provider_id=row["provider_id"],
        name=row["name"],
        is_selected=bool(row["is_selected"]),
        is_primary=bool(row["is_primary"]),
        is_hidden=bool(row["is_hidden"]),
        is_accessible=bool(row["is_accessible"]),
    )


def _row_to_entity(row: aiosqlite.Row) -> EntityRecord:
    return EntityRecord(
        local_id=row["id"],
        provider_id=row["provider_id"],
        sub_resource_id=row["sub_resource_id"],
        revision=row["revision"],
        status=EntityStatus(row["status"]),
        kind=EntityKind(row["kind"]),
        parent_id=row["parent_id"],
        recurrence=json.loads(row["recurrence"] or "[]"),
        attendees=json.loads(row["attendees"] or "[]"),
        response_tally=json.loads(row["response_tally"] or "{}"),
        self_response=row["self_response"],
        meeting_url=row["meeting_url"],
        updated_at=parse_timestamp(row["provider_updated_at"]),
        payload=json.loads(row["payload"] or "{}"),
    )
