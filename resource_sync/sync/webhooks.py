"""Registration, renewal, and teardown of push-notification channels."""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import aiosqlite

from resource_sync.database import Database
from resource_sync.sync.interfaces import ProviderClient
from resource_sync.sync.models import (
    WebhookChannel,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from resource_sync.sync.tokens import SyncTokenStore

logger = logging.getLogger(__name__)


class WebhookChannelRepository:
    """Channel rows in ``webhook_channels``."""

    def __init__(self, db: Database):
        self.db = db

    async def add(self, channel: WebhookChannel) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                """INSERT INTO webhook_channels
                   (user_id, family, sub_resource_id, channel_id, resource_id, token, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    channel.user_id,
                    channel.family,
                    channel.sub_resource_id,
                    channel.channel_id,
                    channel.resource_id,
                    channel.token,
                    format_timestamp(channel.expires_at),
                ),
            )

    async def get(self, channel_id: str) -> Optional[WebhookChannel]:
        row = await self.db.fetchone(
            "SELECT * FROM webhook_channels WHERE channel_id = ?", (channel_id,)
        )
        return _row_to_channel(row) if row else None

    async def find_for_sub_resource(
        self, user_id: str, family: str, sub_resource_id: str
    ) -> Optional[WebhookChannel]:
        row = await self.db.fetchone(
            """SELECT * FROM webhook_channels
               WHERE user_id = ? AND family = ? AND sub_resource_id = ?
               ORDER BY expires_at DESC LIMIT 1""",
            (user_id, family, sub_resource_id),
        )
        return _row_to_channel(row) if row else None

    async def list_for_user(self, user_id: str, family: str) -> list[WebhookChannel]:
        rows = await self.db.fetchall(
            "SELECT * FROM webhook_channels WHERE user_id = ? AND family = ?",
            (user_id, family),
        )
        return [_row_to_channel(row) for row in rows]

    async def list_all(self) -> list[WebhookChannel]:
        rows = await self.db.fetchall("SELECT * FROM webhook_channels ORDER BY expires_at")
        return [_row_to_channel(row) for row in rows]

    async def delete(self, channel_id: str) -> None:
        async with self.db.transaction() as db:
            await db.execute("DELETE FROM webhook_channels WHERE channel_id = ?", (channel_id,))

    async def touch(self, channel_id: str, at: datetime) -> None:
        async with self.db.transaction() as db:
            await db.execute(
                "UPDATE webhook_channels SET last_notification_at = ? WHERE channel_id = ?",
                (format_timestamp(at), channel_id),
            )

    async def delete_expired(self, before: datetime) -> int:
        async with self.db.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM webhook_channels WHERE expires_at < ?", (format_timestamp(before),)
            )
            return cursor.rowcount


class WebhookLifecycleManager:
    """Register, renew, and stop channels.

    Holds no timers: a periodic job calls :meth:`needs_renewal` for every
    channel on record and renews the ones that need it.
    """

    def __init__(
        self,
        channels: WebhookChannelRepository,
        tokens: SyncTokenStore,
        *,
        renewal_buffer: timedelta = timedelta(hours=1),
        lease: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.channels = channels
        self.tokens = tokens
        self.renewal_buffer = renewal_buffer
        self.lease = lease
        self._clock = clock

    def needs_renewal(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """True when the lease has passed or ends within the renewal buffer.

        ``None`` means there is no lease to renew.
        """
        if expires_at is None:
            return False
        now = now or self._clock()
        return expires_at - now < self.renewal_buffer

    async def register(
        self,
        provider: ProviderClient,
        user_id: str,
        family: str,
        sub_resource_id: str,
        callback_url: str,
    ) -> WebhookChannel:
        """Open a new channel for ``sub_resource_id``, replacing any existing one."""
        if not callback_url.startswith("https://"):
            raise ValueError("Webhook callback URL must use HTTPS")

        existing = await self.channels.find_for_sub_resource(user_id, family, sub_resource_id)
        if existing:
            await self.stop(provider, existing.channel_id, existing.resource_id)

        channel_id = f"{family}-{uuid.uuid4()}"
        token = secrets.token_urlsafe(32)
        response = await provider.watch(
            sub_resource_id,
            callback_url,
            channel_id=channel_id,
            token=token,
            expires_at=self._clock() + self.lease,
        )

        channel = WebhookChannel(
            channel_id=response.channel_id,
            resource_id=response.resource_id,
            user_id=user_id,
            family=family,
            sub_resource_id=sub_resource_id,
            expires_at=response.expires_at,
            token=token,
        )
        await self.channels.add(channel)
        await self.tokens.set_webhook(
            user_id, family, channel.channel_id, channel.resource_id, channel.expires_at
        )

        logger.info(
            f"Registered webhook channel {channel.channel_id} for {family} "
            f"sub-resource {sub_resource_id} (expires {format_timestamp(channel.expires_at)})"
        )
        return channel

    async def stop(self, provider: Optional[ProviderClient], channel_id: str, resource_id: str) -> bool:
        """Best-effort deregistration; the local row is always removed.

        Returns whether the provider confirmed the stop. A failed stop is not
        retried; the lease simply expires.
        """
        stopped = False
        if provider is not None:
            try:
                await provider.stop_watch(channel_id, resource_id)
                stopped = True
            except Exception as e:
                logger.warning(f"Failed to stop webhook channel {channel_id}: {e}")

        channel = await self.channels.get(channel_id)
        await self.channels.delete(channel_id)
        if channel:
            await self.tokens.clear_webhook(channel.user_id, channel.family, channel_id)

        logger.info(f"Stopped webhook channel {channel_id}")
        return stopped

    async def ensure_channel(
        self,
        provider: ProviderClient,
        user_id: str,
        family: str,
        sub_resource_id: str,
        callback_url: str,
    ) -> WebhookChannel:
        """Return a live channel for the sub-resource, registering or renewing as needed."""
        existing = await self.channels.find_for_sub_resource(user_id, family, sub_resource_id)
        if existing and not self.needs_renewal(existing.expires_at):
            return existing
        return await self.register(provider, user_id, family, sub_resource_id, callback_url)

    async def renew(self, provider: ProviderClient, channel: WebhookChannel, callback_url: str) -> WebhookChannel:
        return await self.register(
            provider, channel.user_id, channel.family, channel.sub_resource_id, callback_url
        )

    async def stop_all(self, provider: Optional[ProviderClient], user_id: str, family: str) -> int:
        """Tear down every channel of an account, e.g. on disconnect."""
        channels = await self.channels.list_for_user(user_id, family)
        for channel in channels:
            await self.stop(provider, channel.channel_id, channel.resource_id)
        return len(channels)


def _row_to_channel(row: aiosqlite.Row) -> WebhookChannel:
    return WebhookChannel(
        channel_id=row["channel_id"],
        resource_id=row["resource_id"],
        user_id=row["user_id"],
        family=row["family"],
        sub_resource_id=row["sub_resource_id"],
        expires_at=parse_timestamp(row["expires_at"]),
        token=row["token"],
        last_notification_at=parse_timestamp(row["last_notification_at"]),
    )
