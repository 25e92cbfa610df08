"""Per-account sync state machine: strategy selection, paging, and outcomes."""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from resource_sync.sync.audit import SyncLog
from resource_sync.sync.backoff import ErrorBackoffController
from resource_sync.sync.errors import (
    AuthFailureError,
    ProviderServerError,
    RateLimitedError,
    SyncError,
    TokenExpiredError,
)
from resource_sync.sync.interfaces import (
    CredentialProvider,
    LocalStore,
    ProviderClient,
    ProviderFactory,
)
from resource_sync.sync.models import (
    SubResource,
    SyncMode,
    SyncResult,
    SyncState,
    SyncStatus,
    utcnow,
)
from resource_sync.sync.reconciler import ChangeReconciler
from resource_sync.sync.tokens import SyncTokenStore
from resource_sync.sync.webhooks import WebhookLifecycleManager

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (SyncStatus.IDLE, SyncStatus.ERROR)


class SyncOrchestrator:
    """Runs syncs for one resource family.

    The provider and store are injected, so the same class drives every
    family. Runs for the same (user, family) key are serialized by a
    compare-and-set on ``sync_state.status``: a run that finds the key held
    returns a skipped result instead of waiting.
    """

    def __init__(
        self,
        family: str,
        provider_factory: ProviderFactory,
        store: LocalStore,
        tokens: SyncTokenStore,
        credentials: CredentialProvider,
        *,
        backoff: Optional[ErrorBackoffController] = None,
        reconciler: Optional[ChangeReconciler] = None,
        sync_log: Optional[SyncLog] = None,
        webhooks: Optional[WebhookLifecycleManager] = None,
        callback_url: Optional[str] = None,
        liveness_timeout: timedelta = timedelta(minutes=30),
        full_sync_staleness: timedelta = timedelta(days=7),
        full_sync_lookback: Optional[timedelta] = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.family = family
        self.provider_factory = provider_factory
        self.store = store
        self.tokens = tokens
        self.credentials = credentials
        self.backoff = backoff or ErrorBackoffController()
        self.reconciler = reconciler or ChangeReconciler(store)
        self.sync_log = sync_log
        self.webhooks = webhooks
        self.callback_url = callback_url
        self.liveness_timeout = liveness_timeout
        self.full_sync_staleness = full_sync_staleness
        self.full_sync_lookback = full_sync_lookback
        self._clock = clock

    def is_stale(self, state: SyncState, now: Optional[datetime] = None) -> bool:
        """True when an active status has outlived the liveness timeout."""
        if not state.is_active:
            return False
        if state.status_changed_at is None:
            return True
        now = now or self._clock()
        return now - state.status_changed_at > self.liveness_timeout

    def select_strategy(
        self,
        state: SyncState,
        sub_resources: list[SubResource],
        mode: SyncMode = SyncMode.AUTO,
        now: Optional[datetime] = None,
    ) -> SyncStatus:
        """Pick full or incremental for a run.

        Incremental needs the sub-resource list token, a token for every
        participating sub-resource, a recent enough full sync, and a previous
        run that did not end in error. Anything else forces a full sync, even
        when ``mode`` asks for incremental.
        """
        mode = SyncMode(mode)
        if mode == SyncMode.FULL:
            return SyncStatus.FULL_SYNC

        now = now or self._clock()
        participating = [s for s in sub_resources if s.participates]
        reason = None
        if state.status == SyncStatus.ERROR:
            reason = "previous run failed"
        elif not state.resource_sync_token:
            reason = "no sub-resource list token"
        elif not participating:
            reason = "no participating sub-resources on record"
        elif any(s.provider_id not in state.sub_resource_tokens for s in participating):
            reason = "missing sub-resource token"
        elif state.last_full_sync_at is None:
            reason = "no completed full sync"
        elif now - state.last_full_sync_at >= self.full_sync_staleness:
            reason = "last full sync is stale"

        if reason is None:
            return SyncStatus.INCREMENTAL_SYNC
        if mode == SyncMode.INCREMENTAL:
            logger.info(
                f"Incremental sync not possible for {self.family} user {state.user_id} "
                f"({reason}), running full sync"
            )
        else:
            logger.debug(f"Full sync selected for {self.family} user {state.user_id}: {reason}")
        return SyncStatus.FULL_SYNC

    async def run(self, user_id: str, mode: SyncMode = SyncMode.AUTO) -> SyncResult:
        """Sync one account. Never raises for provider or sync failures."""
        mode = SyncMode(mode)
        started = time.monotonic()
        result = SyncResult(user_id=user_id, family=self.family)
        now = self._clock()

        state = await self.tokens.get_or_create(user_id, self.family)
        if state.is_active:
            if not self.is_stale(state, now):
                logger.info(f"Sync already in progress for {self.family} user {user_id}, skipping")
                return result.skip("sync already in progress")
            logger.warning(
                f"Sync state for {self.family} user {user_id} stuck in {state.status.value} "
                f"since {state.status_changed_at}, resetting to idle"
            )
            await self.tokens.compare_and_set_status(
                user_id, self.family, [state.status], SyncStatus.IDLE, now
            )
            state = await self.tokens.get(user_id, self.family)

        if state.status == SyncStatus.PAUSED:
            logger.info(f"Sync paused for {self.family} user {user_id}, skipping")
            return result.skip("paused")

        if not await self.tokens.compare_and_set_status(
            user_id, self.family, CLAIMABLE_STATUSES, SyncStatus.SYNCING, now
        ):
            logger.info(f"Sync already in progress for {self.family} user {user_id}, skipping")
            return result.skip("sync already in progress")

        provider: Optional[ProviderClient] = None
        try:
            access_token = await self.credentials.get_valid_access_token(user_id, self.family)
            if not access_token:
                raise AuthFailureError("No valid credential available")
            provider = self.provider_factory(access_token)

            sub_resources = await self.store.list_sub_resources(user_id, self.family)
            strategy = self.select_strategy(state, sub_resources, mode, now)
            result.strategy = strategy
            await self.tokens.compare_and_set_status(
                user_id, self.family, [SyncStatus.SYNCING], strategy
            )
            logger.info(f"Starting {strategy.value} for {self.family} user {user_id}")

            if strategy == SyncStatus.FULL_SYNC:
                await self._full_sync(provider, user_id, result)
            else:
                await self._incremental_sync(provider, state, sub_resources, result)

            await self.tokens.mark_success(user_id, self.family, strategy, self._clock())
            result.outcome = "success"
            logger.info(
                f"Completed {strategy.value} for {self.family} user {user_id}: "
                f"{result.created} created, {result.updated} updated, {result.deleted} deleted, "
                f"{result.stale} stale, {len(result.failed_records)} failed"
            )

            await self._ensure_channels(provider, user_id)

        except RateLimitedError as e:
            if e.retry_after:
                delay = timedelta(seconds=e.retry_after)
            else:
                delay = self.backoff.delay(state.error_count)
            retry_at = self._clock() + delay
            logger.warning(
                f"Rate limited syncing {self.family} user {user_id}, retrying after {retry_at.isoformat()}"
            )
            await self.tokens.mark_rate_limited(user_id, self.family, str(e), retry_at)
            result.outcome = "rate_limited"
            result.error = str(e)

        except AuthFailureError as e:
            logger.error(f"Authentication failed for {self.family} user {user_id}: {e}")
            await self.tokens.mark_paused(user_id, self.family, f"Authentication failed: {e}")
            result.outcome = "paused"
            result.error = str(e)

        except Exception as e:
            if isinstance(e, SyncError):
                logger.error(f"Sync failed for {self.family} user {user_id}: {e}")
            else:
                logger.exception(f"Unexpected error syncing {self.family} user {user_id}: {e}")

            error_count = state.error_count + 1
            paused = self.backoff.should_pause(error_count)
            retry_at = None if paused else self.backoff.next_retry_at(error_count, self._clock())
            await self.tokens.mark_failure(
                user_id, self.family, str(e), error_count, paused, retry_at
            )
            if paused:
                logger.warning(
                    f"Pausing {self.family} sync for user {user_id} after {error_count} consecutive errors"
                )
            result.outcome = "paused" if paused else "error"
            result.error = str(e)

        finally:
            await self.tokens.release(user_id, self.family)
            if provider is not None:
                await provider.close()
            result.duration_ms = int((time.monotonic() - started) * 1000)

        await self._audit(result)
        return result

    async def _full_sync(self, provider: ProviderClient, user_id: str, result: SyncResult) -> None:
        listing = await provider.list_sub_resources()
        async with self.store.transaction():
            await self.store.upsert_sub_resources(user_id, self.family, listing.items)
            removed = await self.store.mark_sub_resources_inaccessible(
                user_id, self.family, [s.provider_id for s in listing.items]
            )
        for sub_resource_id in removed:
            await self.tokens.clear_sub_resource_token(user_id, self.family, sub_resource_id)

        sub_resources = await self.store.list_sub_resources(user_id, self.family)
        participating = [s for s in sub_resources if s.participates]
        logger.info(
            f"Full sync of {len(participating)} of {len(sub_resources)} {self.family} "
            f"sub-resource(s) for user {user_id}"
        )

        time_min = self._clock() - self.full_sync_lookback if self.full_sync_lookback else None
        for sub in participating:
            await self._fetch_entities(provider, user_id, sub.provider_id, result, time_min=time_min)
            result.sub_resources_processed += 1

        # Written last so a failed full sync never looks complete
        if listing.next_sync_token:
            await self.tokens.save_resource_token(user_id, self.family, listing.next_sync_token)
            result.tokens_persisted += 1
        else:
            logger.warning(f"Provider returned no sub-resource list token for {self.family} user {user_id}")

    async def _incremental_sync(
        self,
        provider: ProviderClient,
        state: SyncState,
        sub_resources: list[SubResource],
        result: SyncResult,
    ) -> None:
        user_id = state.user_id
        for sub in [s for s in sub_resources if s.participates]:
            sync_token = state.sub_resource_tokens[sub.provider_id]
            try:
                await self._fetch_entities(provider, user_id, sub.provider_id, result, sync_token=sync_token)
            except TokenExpiredError:
                logger.warning(
                    f"Sync token expired for {self.family} sub-resource {sub.provider_id} "
                    f"of user {user_id}, refetching it in full"
                )
                await self.tokens.clear_sub_resource_token(user_id, self.family, sub.provider_id)
                result.degraded_sub_resources.append(sub.provider_id)
                time_min = self._clock() - self.full_sync_lookback if self.full_sync_lookback else None
                await self._fetch_entities(provider, user_id, sub.provider_id, result, time_min=time_min)
            result.sub_resources_processed += 1

    async def _fetch_entities(
        self,
        provider: ProviderClient,
        user_id: str,
        sub_resource_id: str,
        result: SyncResult,
        *,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> None:
        """Page through one sub-resource, committing each page before the next request."""
        page_token = None
        pages = 0
        while True:
            page = await provider.list_entities(
                sub_resource_id, page_token=page_token, sync_token=sync_token, time_min=time_min
            )
            pages += 1
            if page.next_page_token and page.next_sync_token:
                raise ProviderServerError(
                    f"Provider returned a sync token on a non-terminal page of {sub_resource_id}"
                )

            plan = await self.reconciler.reconcile(user_id, self.family, sub_resource_id, page.items)
            deleted = 0
            async with self.store.transaction():
                if plan.upserts:
                    await self.store.upsert_entities(
                        user_id, self.family, sub_resource_id, plan.upserts.values()
                    )
                if plan.deletions:
                    deleted = await self.store.soft_delete_entities(
                        user_id, self.family, sub_resource_id, plan.deletions
                    )

            result.created += plan.created
            result.updated += plan.updated
            result.deleted += deleted
            result.stale += plan.stale
            result.failed_records.extend(plan.failed)

            if page.next_sync_token:
                await self.tokens.save_sub_resource_token(
                    user_id, self.family, sub_resource_id, page.next_sync_token
                )
                result.tokens_persisted += 1

            if page.is_last:
                if not page.next_sync_token:
                    logger.warning(
                        f"Terminal page for {self.family} sub-resource {sub_resource_id} carried no sync token"
                    )
                break
            page_token = page.next_page_token

        logger.debug(f"Fetched {pages} page(s) for {self.family} sub-resource {sub_resource_id}")

    async def _ensure_channels(self, provider: ProviderClient, user_id: str) -> None:
        """Keep one live channel per participating sub-resource. Failures never fail the run."""
        if self.webhooks is None or not self.callback_url or not provider.supports_push:
            return

        try:
            sub_resources = await self.store.list_sub_resources(user_id, self.family)
            wanted = {s.provider_id for s in sub_resources if s.participates}

            for channel in await self.webhooks.channels.list_for_user(user_id, self.family):
                if channel.sub_resource_id not in wanted:
                    await self.webhooks.stop(provider, channel.channel_id, channel.resource_id)

            for sub_resource_id in sorted(wanted):
                await self.webhooks.ensure_channel(
                    provider, user_id, self.family, sub_resource_id, self.callback_url
                )
        except Exception as e:
            logger.warning(f"Failed to set up push notifications for {self.family} user {user_id}: {e}")

    async def _audit(self, result: SyncResult) -> None:
        if self.sync_log is None:
            return
        action = result.strategy.value if result.strategy else "sync"
        await self.sync_log.record(
            action,
            result.outcome,
            result.to_dict(),
            user_id=result.user_id,
            family=result.family,
        )
