"""Webhook receiver for provider push notifications."""

import logging

from fastapi import APIRouter, Depends, Request

from resource_sync.api.dependencies import get_engine
from resource_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/{family}")
async def receive_webhook(
    family: str,
    request: Request,
    engine: SyncEngine = Depends(get_engine),
):
    """
    Receive a push notification.

    The notification only says that something changed; the data is fetched by
    the triggered sync. The response is always 200 so the provider never
    suspends the channel, whatever happened to the notification. Bursts are
    absorbed by the per-resource debounce, not by a rate limit.
    """
    outcome = await engine.handle_webhook(family, request.headers)
    if not outcome.accepted:
        logger.info(f"Webhook for {family} ignored: {outcome.reason}")
    return {"status": "ok"}
