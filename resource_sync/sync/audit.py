"""Audit trail of sync runs and control actions (``sync_log``)."""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from resource_sync.database import Database
from resource_sync.sync.models import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class SyncLog:
    def __init__(self, db: Database):
        self.db = db

    async def record(
        self,
        action: str,
        status: str,
        details: Optional[dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        family: Optional[str] = None,
    ) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """INSERT INTO sync_log (user_id, family, action, status, details, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    user_id,
                    family,
                    action,
                    status,
                    json.dumps(details, default=str) if details is not None else None,
                    format_timestamp(utcnow()),
                ),
            )

    async def recent(self, user_id: str, family: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = await self.db.fetchall(
            """SELECT * FROM sync_log WHERE user_id = ? AND family = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (user_id, family, limit),
        )
        return [
            {
                "id": row["id"],
                "action": row["action"],
                "status": row["status"],
                "details": json.loads(row["details"]) if row["details"] else None,
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def purge(self, before: datetime) -> int:
        """Delete entries older than ``before``."""
        async with self.db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM sync_log WHERE created_at < ?", (format_timestamp(before),)
            )
            count = cursor.rowcount
        if count:
            logger.info(f"Purged {count} sync log entries")
        return count
