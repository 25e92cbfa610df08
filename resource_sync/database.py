"""Database connection and schema management."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiosqlite

logger = logging.getLogger(__name__)


SCHEMA = """
-- One row per user x resource family
CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    family TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    status_changed_at TIMESTAMP,
    last_sync_at TIMESTAMP,
    last_full_sync_at TIMESTAMP,
    resource_sync_token TEXT,
    error_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    next_retry_at TIMESTAMP,
    webhook_channel_id TEXT,
    webhook_resource_id TEXT,
    webhook_expires_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(user_id, family)
);

-- Continuation tokens per sub-resource (per-calendar event tokens, mailbox history id)
CREATE TABLE IF NOT EXISTS sub_resource_tokens (
    sync_state_id INTEGER NOT NULL REFERENCES sync_state(id) ON DELETE CASCADE,
    sub_resource_id TEXT NOT NULL,
    sync_token TEXT NOT NULL,
    updated_at TIMESTAMP,
    PRIMARY KEY (sync_state_id, sub_resource_id)
);

-- Calendars, mailboxes
CREATE TABLE IF NOT EXISTS sub_resources (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    family TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    name TEXT,
    is_selected BOOLEAN DEFAULT FALSE,
    is_primary BOOLEAN DEFAULT FALSE,
    is_hidden BOOLEAN DEFAULT FALSE,
    is_accessible BOOLEAN DEFAULT TRUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(user_id, family, provider_id)
);

-- Synced events and messages
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    family TEXT NOT NULL,
    sub_resource_id TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active',
    kind TEXT NOT NULL DEFAULT 'single',
    parent_id TEXT,
    recurrence TEXT,
    attendees TEXT,
    response_tally TEXT,
    self_response TEXT,
    meeting_url TEXT,
    payload TEXT,
    provider_updated_at TIMESTAMP,
    deleted_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(user_id, family, sub_resource_id, provider_id)
);

CREATE INDEX IF NOT EXISTS idx_entities_parent
    ON entities(user_id, family, parent_id);

-- Push notification leases
CREATE TABLE IF NOT EXISTS webhook_channels (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    family TEXT NOT NULL,
    sub_resource_id TEXT NOT NULL,
    channel_id TEXT NOT NULL UNIQUE,
    resource_id TEXT NOT NULL,
    token TEXT,
    expires_at TIMESTAMP NOT NULL,
    last_notification_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_webhook_expiration ON webhook_channels(expires_at);

-- Bearer credentials written by the external OAuth component (encrypted at rest)
CREATE TABLE IF NOT EXISTS credentials (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    family TEXT NOT NULL,
    access_token_encrypted BLOB NOT NULL,
    expires_at TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(user_id, family)
);

-- Audit log
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    user_id TEXT,
    family TEXT,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_created ON sync_log(created_at);
CREATE INDEX IF NOT EXISTS idx_sync_log_user ON sync_log(user_id, family, created_at);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


class Database:
    """Owns the single aiosqlite connection for the process.

    Constructed once at startup, connected with :meth:`connect` and closed on
    shutdown with :meth:`close`. All writers go through :meth:`transaction`,
    which serializes commits on the shared connection.
    """

    def __init__(self, path: str):
        self.path = path
        self._connection: Optional[aiosqlite.Connection] = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def connect(self) -> aiosqlite.Connection:
        """Open the connection and create the schema if necessary."""
        async with self._connect_lock:
            if self._connection is None:
                self._connection = await aiosqlite.connect(self.path)
                self._connection.row_factory = aiosqlite.Row
                await self._connection.execute("PRAGMA foreign_keys = ON")
                await self._connection.execute("PRAGMA journal_mode = WAL")
                await init_schema(self._connection)
            return self._connection

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database is not connected")
        return self._connection

    async def close(self) -> None:
        """Close the database connection."""
        async with self._connect_lock:
            if self._connection is not None:
                await self._connection.close()
                self._connection = None
                logger.info("Database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Run a block of writes atomically; commit on success, roll back on error."""
        async with self._write_lock:
            db = self.connection
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            else:
                await db.commit()

    async def fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        cursor = await self.connection.execute(sql, params)
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        cursor = await self.connection.execute(sql, params)
        return list(await cursor.fetchall())

    async def ping(self) -> None:
        await self.connection.execute("SELECT 1")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")
