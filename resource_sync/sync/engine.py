"""Core sync engine: wires the components together per resource family."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from resource_sync.config import Settings
from resource_sync.database import Database
from resource_sync.sync.audit import SyncLog
from resource_sync.sync.backoff import ErrorBackoffController
from resource_sync.sync.interfaces import CredentialProvider, ProviderFactory
from resource_sync.sync.models import SyncMode, SyncResult, SyncState, utcnow
from resource_sync.sync.notifications import WebhookNotificationHandler, WebhookOutcome
from resource_sync.sync.orchestrator import SyncOrchestrator
from resource_sync.sync.store import SqliteLocalStore
from resource_sync.sync.tokens import SyncTokenStore
from resource_sync.sync.webhooks import WebhookChannelRepository, WebhookLifecycleManager
from resource_sync.utils.tasks import create_background_task

logger = logging.getLogger(__name__)


class UnknownFamilyError(KeyError):
    """No provider is configured for the requested resource family."""


class SyncEngine:
    """Entry point used by the HTTP layer and the scheduler.

    One :class:`SyncOrchestrator` per configured family; every family shares
    the same database, token store, channel registry, and notification
    handler.
    """

    def __init__(
        self,
        db: Database,
        settings: Settings,
        provider_factories: Mapping[str, ProviderFactory],
        credentials: CredentialProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.provider_factories = dict(provider_factories)
        self.credentials = credentials
        self._clock = clock

        self.store = SqliteLocalStore(db)
        self.tokens = SyncTokenStore(db)
        self.sync_log = SyncLog(db)
        self.channels = WebhookChannelRepository(db)
        self.backoff = ErrorBackoffController.from_settings(settings)
        self.webhooks = WebhookLifecycleManager(
            self.channels,
            self.tokens,
            renewal_buffer=settings.webhook_renewal_buffer,
            lease=settings.webhook_lease,
            clock=clock,
        )
        self.notifications = WebhookNotificationHandler(
            self.channels,
            self._enqueue_sync,
            debounce_window=settings.webhook_debounce_window,
            clock=clock,
        )
        self.orchestrators = {
            family: SyncOrchestrator(
                family,
                factory,
                self.store,
                self.tokens,
                credentials,
                backoff=self.backoff,
                sync_log=self.sync_log,
                webhooks=self.webhooks if settings.enable_webhooks else None,
                callback_url=settings.webhook_callback_url(family),
                liveness_timeout=settings.liveness_timeout,
                full_sync_staleness=settings.full_sync_staleness,
                full_sync_lookback=settings.full_sync_lookback,
                clock=clock,
            )
            for family, factory in self.provider_factories.items()
        }

    @property
    def families(self) -> list[str]:
        return sorted(self.orchestrators)

    def orchestrator(self, family: str) -> SyncOrchestrator:
        try:
            return self.orchestrators[family]
        except KeyError:
            raise UnknownFamilyError(family) from None

    async def run(self, user_id: str, family: str, mode: SyncMode = SyncMode.AUTO) -> SyncResult:
        return await self.orchestrator(family).run(user_id, SyncMode(mode))

    async def handle_webhook(self, family: Optional[str], headers: Mapping[str, Any]) -> WebhookOutcome:
        """Process a push notification. Never raises; the caller always answers 200."""
        try:
            return await self.notifications.handle(headers, family)
        except Exception as e:
            logger.exception(f"Failed to process webhook notification: {e}")
            return WebhookOutcome(accepted=False, reason="internal error")

    async def get_sync_state(self, user_id: str, family: str) -> Optional[SyncState]:
        self.orchestrator(family)
        return await self.tokens.get(user_id, family)

    async def reset(self, user_id: str, family: str) -> bool:
        """Clear error bookkeeping and unpause. Refused while a run holds the key."""
        self.orchestrator(family)
        reset = await self.tokens.reset(user_id, family, self._clock())
        await self.sync_log.record(
            "reset", "success" if reset else "skipped", user_id=user_id, family=family
        )
        if reset:
            logger.info(f"Reset sync state for {family} user {user_id}")
        return reset

    async def disconnect(self, user_id: str, family: str) -> dict:
        """Forget an account: stop its channels, drop its tokens, and reset its state."""
        orchestrator = self.orchestrator(family)
        provider = None
        access_token = await self.credentials.get_valid_access_token(user_id, family)
        if access_token:
            provider = orchestrator.provider_factory(access_token)
        try:
            stopped = await self.webhooks.stop_all(provider, user_id, family)
        finally:
            if provider is not None:
                await provider.close()

        await self.tokens.clear_all_tokens(user_id, family)
        await self.tokens.clear_webhook(user_id, family)
        await self.tokens.reset(user_id, family, self._clock())

        summary = {"channels_stopped": stopped}
        await self.sync_log.record("disconnect", "success", summary, user_id=user_id, family=family)
        logger.info(f"Disconnected {family} user {user_id}: {summary}")
        return summary

    async def renew_channels(self) -> dict:
        """Renew every channel whose lease is inside the renewal buffer."""
        summary = {"checked": 0, "renewed": 0, "failed": 0}
        if not self.settings.enable_webhooks:
            return summary

        for channel in await self.channels.list_all():
            summary["checked"] += 1
            if not self.webhooks.needs_renewal(channel.expires_at):
                continue
            orchestrator = self.orchestrators.get(channel.family)
            if orchestrator is None:
                logger.warning(f"Channel {channel.channel_id} belongs to unconfigured family {channel.family}")
                continue

            provider = None
            try:
                access_token = await self.credentials.get_valid_access_token(channel.user_id, channel.family)
                if not access_token:
                    logger.warning(
                        f"No credential to renew channel {channel.channel_id} for user {channel.user_id}"
                    )
                    summary["failed"] += 1
                    continue
                provider = orchestrator.provider_factory(access_token)
                await self.webhooks.renew(provider, channel, orchestrator.callback_url)
                summary["renewed"] += 1
            except Exception as e:
                logger.error(f"Failed to renew webhook channel {channel.channel_id}: {e}")
                summary["failed"] += 1
            finally:
                if provider is not None:
                    await provider.close()

        logger.info(f"Webhook renewal completed: {summary}")
        return summary

    async def recover_stale(self) -> int:
        """Reset runs that outlived the liveness timeout, e.g. after a crash."""
        now = self._clock()
        return await self.tokens.reset_stale(now - self.settings.liveness_timeout, now)

    async def cleanup(self) -> dict:
        now = self._clock()
        summary = {
            "old_sync_logs": await self.sync_log.purge(
                now - timedelta(days=self.settings.audit_log_retention_days)
            ),
            "expired_channels": await self.channels.delete_expired(now),
            "debounce_entries": self.notifications.prune(now),
        }
        logger.info(f"Retention cleanup completed: {summary}")
        await self.sync_log.record("retention_cleanup", "success", summary)
        return summary

    def _enqueue_sync(self, user_id: str, family: str) -> None:
        create_background_task(
            self.run(user_id, family, SyncMode.INCREMENTAL),
            f"sync_{family}_user_{user_id}",
        )
