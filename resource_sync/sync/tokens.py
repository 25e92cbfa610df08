"""Persistence of sync state, continuation tokens, and full-sync watermarks."""

import logging
from datetime import datetime
from typing import Iterable, Optional

import aiosqlite

from resource_sync.database import Database
from resource_sync.sync.models import (
    ACTIVE_STATUSES,
    SyncState,
    SyncStatus,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


def _placeholders(values: tuple) -> str:
    return ", ".join("?" for _ in values)


class SyncTokenStore:
    """Owns ``sync_state`` and ``sub_resource_tokens``.

    Every status change is a compare-and-set on the current status, which is
    how runs for the same (user, family) key are serialized without a held
    mutex.
    """

    def __init__(self, db: Database):
        self.db = db

    async def get(self, user_id: str, family: str) -> Optional[SyncState]:
        row = await self.db.fetchone(
            "SELECT * FROM sync_state WHERE user_id = ? AND family = ?",
            (user_id, family),
        )
        if not row:
            return None
        tokens = await self.db.fetchall(
            "SELECT sub_resource_id, sync_token FROM sub_resource_tokens WHERE sync_state_id = ?",
            (row["id"],),
        )
        return _row_to_state(row, {t["sub_resource_id"]: t["sync_token"] for t in tokens})

    async def get_or_create(self, user_id: str, family: str) -> SyncState:
        state = await self.get(user_id, family)
        if state is not None:
            return state
        async with self.db.transaction() as db:
            await db.execute(
                """INSERT INTO sync_state (user_id, family, status, status_changed_at, updated_at)
                   VALUES (?, ?, 'idle', ?, ?)
                   ON CONFLICT(user_id, family) DO NOTHING""",
                (user_id, family, format_timestamp(utcnow()), format_timestamp(utcnow())),
            )
        return await self.get(user_id, family)

    async def compare_and_set_status(
        self,
        user_id: str,
        family: str,
        expected: Iterable[SyncStatus],
        new_status: SyncStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        """Move to ``new_status`` only if the current status is one of ``expected``."""
        expected_values = tuple(SyncStatus(s).value for s in expected)
        stamp = format_timestamp(now or utcnow())
        async with self.db.transaction() as db:
            cursor = await db.execute(
                f"""UPDATE sync_state SET status = ?, status_changed_at = ?, updated_at = ?
                    WHERE user_id = ? AND family = ? AND status IN ({_placeholders(expected_values)})""",
                (SyncStatus(new_status).value, stamp, stamp, user_id, family, *expected_values),
            )
            return cursor.rowcount == 1

    async def release(self, user_id: str, family: str, now: Optional[datetime] = None) -> bool:
        """Clear a still-held active status. No-op when the run already recorded an outcome."""
        released = await self.compare_and_set_status(
            user_id, family, ACTIVE_STATUSES, SyncStatus.IDLE, now
        )
        if released:
            logger.warning(f"Released sync key {family}:{user_id} without a recorded outcome")
        return released

    async def reset_stale(self, cutoff: datetime, now: Optional[datetime] = None) -> int:
        """Reset every active state whose status is older than ``cutoff`` to idle."""
        stamp = format_timestamp(now or utcnow())
        async with self.db.transaction() as db:
            cursor = await db.execute(
                f"""UPDATE sync_state SET status = 'idle', status_changed_at = ?, updated_at = ?
                    WHERE status IN ({_placeholders(_ACTIVE_VALUES)})
                    AND (status_changed_at IS NULL OR status_changed_at < ?)""",
                (stamp, stamp, *_ACTIVE_VALUES, format_timestamp(cutoff)),
            )
            count = cursor.rowcount
        if count:
            logger.warning(f"Reset {count} crashed sync state(s) to idle")
        return count

    async def save_resource_token(self, user_id: str, family: str, token: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """UPDATE sync_state SET resource_sync_token = ?, updated_at = ?
                   WHERE user_id = ? AND family = ?""",
                (token, format_timestamp(utcnow()), user_id, family),
            )

    async def save_sub_resource_token(
        self, user_id: str, family: str, sub_resource_id: str, token: str
    ) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """INSERT INTO sub_resource_tokens (sync_state_id, sub_resource_id, sync_token, updated_at)
                   SELECT id, ?, ?, ? FROM sync_state WHERE user_id = ? AND family = ?
                   ON CONFLICT(sync_state_id, sub_resource_id) DO UPDATE SET
                   sync_token = excluded.sync_token,
                   updated_at = excluded.updated_at""",
                (sub_resource_id, token, format_timestamp(utcnow()), user_id, family),
            )

    async def clear_sub_resource_token(self, user_id: str, family: str, sub_resource_id: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """DELETE FROM sub_resource_tokens
                   WHERE sub_resource_id = ? AND sync_state_id =
                   (SELECT id FROM sync_state WHERE user_id = ? AND family = ?)""",
                (sub_resource_id, user_id, family),
            )

    async def clear_all_tokens(self, user_id: str, family: str) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """DELETE FROM sub_resource_tokens WHERE sync_state_id =
                   (SELECT id FROM sync_state WHERE user_id = ? AND family = ?)""",
                (user_id, family),
            )
            await db.execute(
                """UPDATE sync_state SET resource_sync_token = NULL, updated_at = ?
                   WHERE user_id = ? AND family = ?""",
                (format_timestamp(utcnow()), user_id, family),
            )

    async def mark_success(
        self, user_id: str, family: str, strategy: SyncStatus, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        stamp = format_timestamp(now)
        full = SyncStatus(strategy) == SyncStatus.FULL_SYNC
        return await self._finish(
            user_id,
            family,
            f"""status = 'idle', status_changed_at = ?, last_sync_at = ?,
                last_full_sync_at = {'?' if full else 'last_full_sync_at'},
                error_count = 0, error_message = NULL, next_retry_at = NULL, updated_at = ?""",
            (stamp, stamp, stamp, stamp) if full else (stamp, stamp, stamp),
        )

    async def mark_rate_limited(
        self, user_id: str, family: str, message: str, next_retry_at: datetime, now: Optional[datetime] = None
    ) -> bool:
        stamp = format_timestamp(now or utcnow())
        return await self._finish(
            user_id,
            family,
            """status = 'idle', status_changed_at = ?, error_message = ?,
               next_retry_at = ?, updated_at = ?""",
            (stamp, message, format_timestamp(next_retry_at), stamp),
        )

    async def mark_failure(
        self,
        user_id: str,
        family: str,
        message: str,
        error_count: int,
        paused: bool,
        next_retry_at: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> bool:
        stamp = format_timestamp(now or utcnow())
        status = SyncStatus.PAUSED if paused else SyncStatus.ERROR
        return await self._finish(
            user_id,
            family,
            """status = ?, status_changed_at = ?, error_count = ?, error_message = ?,
               next_retry_at = ?, updated_at = ?""",
            (status.value, stamp, error_count, message, format_timestamp(next_retry_at), stamp),
        )

    async def mark_paused(
        self, user_id: str, family: str, message: str, now: Optional[datetime] = None
    ) -> bool:
        stamp = format_timestamp(now or utcnow())
        return await self._finish(
            user_id,
            family,
            """status = 'paused', status_changed_at = ?, error_message = ?,
               next_retry_at = NULL, updated_at = ?""",
            (stamp, message, stamp),
        )

    async def _finish(self, user_id: str, family: str, assignments: str, params: tuple) -> bool:
        """Record a run outcome; only applies while the run still holds the key."""
        async with self.db.transaction() as db:
            cursor = await db.execute(
                f"""UPDATE sync_state SET {assignments}
                    WHERE user_id = ? AND family = ? AND status IN ({_placeholders(_ACTIVE_VALUES)})""",
                (*params, user_id, family, *_ACTIVE_VALUES),
            )
            return cursor.rowcount == 1

    async def reset(self, user_id: str, family: str, now: Optional[datetime] = None) -> bool:
        """Operator/user reset: clear error bookkeeping and unpause. Never touches a running key."""
        stamp = format_timestamp(now or utcnow())
        async with self.db.transaction() as db:
            cursor = await db.execute(
                f"""UPDATE sync_state SET status = 'idle', status_changed_at = ?, error_count = 0,
                    error_message = NULL, next_retry_at = NULL, updated_at = ?
                    WHERE user_id = ? AND family = ? AND status NOT IN ({_placeholders(_ACTIVE_VALUES)})""",
                (stamp, stamp, user_id, family, *_ACTIVE_VALUES),
            )
            return cursor.rowcount == 1

    async def set_webhook(
        self, user_id: str, family: str, channel_id: str, resource_id: str, expires_at: datetime
    ) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """UPDATE sync_state SET webhook_channel_id = ?, webhook_resource_id = ?,
                   webhook_expires_at = ?, updated_at = ?
                   WHERE user_id = ? AND family = ?""",
                (channel_id, resource_id, format_timestamp(expires_at), format_timestamp(utcnow()),
                 user_id, family),
            )

    async def clear_webhook(self, user_id: str, family: str, channel_id: Optional[str] = None) -> None:
        """Clear the webhook fields; with ``channel_id``, only if that channel is the one on record."""
        sql = """UPDATE sync_state SET webhook_channel_id = NULL, webhook_resource_id = NULL,
                 webhook_expires_at = NULL, updated_at = ?
                 WHERE user_id = ? AND family = ?"""
        params: tuple = (format_timestamp(utcnow()), user_id, family)
        if channel_id is not None:
            sql += " AND webhook_channel_id = ?"
            params += (channel_id,)
        async with self.db.transaction() as db:
            await db.execute(sql, params)

    async def list_schedulable(self, now: Optional[datetime] = None) -> list[tuple[str, str]]:
        """(user_id, family) keys the periodic scheduler should run now."""
        rows = await self.db.fetchall(
            """SELECT user_id, family FROM sync_state
               WHERE status != 'paused'
               AND (next_retry_at IS NULL OR next_retry_at <= ?)
               ORDER BY user_id, family""",
            (format_timestamp(now or utcnow()),),
        )
        return [(row["user_id"], row["family"]) for row in rows]


def _row_to_state(row: aiosqlite.Row, tokens: dict[str, str]) -> SyncState:
    return SyncState(
        user_id=row["user_id"],
        family=row["family"],
        status=SyncStatus(row["status"]),
        status_changed_at=parse_timestamp(row["status_changed_at"]),
        last_sync_at=parse_timestamp(row["last_sync_at"]),
        last_full_sync_at=parse_timestamp(row["last_full_sync_at"]),
        resource_sync_token=row["resource_sync_token"],
        sub_resource_tokens=tokens,
        error_count=row["error_count"] or 0,
        error_message=row["error_message"],
        next_retry_at=parse_timestamp(row["next_retry_at"]),
        webhook_channel_id=row["webhook_channel_id"],
        webhook_resource_id=row["webhook_resource_id"],
        webhook_expires_at=parse_timestamp(row["webhook_expires_at"]),
    )
