"""Validation and debouncing of inbound push notifications."""

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from resource_sync.sync.errors import WebhookValidationError
from resource_sync.sync.models import ResourceState, WebhookChannel, utcnow
from resource_sync.sync.webhooks import WebhookChannelRepository

logger = logging.getLogger(__name__)

CHANNEL_ID_HEADER = "X-Goog-Channel-ID"
CHANNEL_TOKEN_HEADER = "X-Goog-Channel-Token"
CHANNEL_EXPIRATION_HEADER = "X-Goog-Channel-Expiration"
RESOURCE_ID_HEADER = "X-Goog-Resource-ID"
RESOURCE_STATE_HEADER = "X-Goog-Resource-State"
MESSAGE_NUMBER_HEADER = "X-Goog-Message-Number"


@dataclass
class Notification:
    channel_id: str
    resource_id: str
    resource_state: ResourceState
    message_number: Optional[int] = None
    token: Optional[str] = None
    expiration: Optional[str] = None


@dataclass
class WebhookOutcome:
    """What the handler did with one notification. Never surfaced to the provider."""

    accepted: bool
    triggered: bool = False
    debounced: bool = False
    user_id: Optional[str] = None
    family: Optional[str] = None
    reason: Optional[str] = None


def parse_headers(headers: Mapping[str, Any]) -> Optional[Notification]:
    """Extract a notification from request headers.

    Header names match case-insensitively; list values use their first item.
    Returns ``None`` when a required header is missing or the state is unknown.
    """
    lowered = {str(key).lower(): value for key, value in headers.items()}

    def _get(name: str) -> Optional[str]:
        value = lowered.get(name.lower())
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    channel_id = _get(CHANNEL_ID_HEADER)
    resource_id = _get(RESOURCE_ID_HEADER)
    state = _get(RESOURCE_STATE_HEADER)
    if not channel_id or not resource_id or not state:
        return None

    try:
        resource_state = ResourceState(state)
    except ValueError:
        return None

    raw_number = _get(MESSAGE_NUMBER_HEADER)
    try:
        message_number = int(raw_number) if raw_number else None
    except ValueError:
        message_number = None

    return Notification(
        channel_id=channel_id,
        resource_id=resource_id,
        resource_state=resource_state,
        message_number=message_number,
        token=_get(CHANNEL_TOKEN_HEADER),
        expiration=_get(CHANNEL_EXPIRATION_HEADER),
    )


SyncTrigger = Callable[[str, str], Any]


class WebhookNotificationHandler:
    """Turn validated notifications into sync triggers.

    A notification is only acted on when its channel id and resource id match
    a registered, unexpired channel exactly, and its channel token matches
    when one was registered. Rapid notifications for the same resource id
    inside ``debounce_window`` collapse into one trigger.
    """

    def __init__(
        self,
        channels: WebhookChannelRepository,
        trigger: SyncTrigger,
        *,
        debounce_window: timedelta = timedelta(seconds=5),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.channels = channels
        self.trigger = trigger
        self.debounce_window = debounce_window
        self._clock = clock
        self._last_notification: dict[str, datetime] = {}

    async def handle(self, headers: Mapping[str, Any], family: Optional[str] = None) -> WebhookOutcome:
        notification = parse_headers(headers)
        if notification is None:
            logger.warning("Ignoring malformed webhook notification")
            return WebhookOutcome(accepted=False, reason="malformed")

        logger.info(
            f"Webhook received: channel={notification.channel_id}, "
            f"resource={notification.resource_id}, state={notification.resource_state.value}"
        )

        # Handshake sent when a channel is created
        if notification.resource_state == ResourceState.SYNC:
            return WebhookOutcome(accepted=True, reason="handshake")

        now = self._clock()
        try:
            channel = await self._validate(notification, family, now)
        except WebhookValidationError as e:
            logger.warning(f"Rejected webhook for channel {notification.channel_id}: {e}")
            return WebhookOutcome(accepted=False, reason=e.message)

        outcome = WebhookOutcome(accepted=True, user_id=channel.user_id, family=channel.family)

        self.prune(now)
        last = self._last_notification.get(notification.resource_id)
        if last is not None and now - last < self.debounce_window:
            logger.debug(f"Debouncing notification for resource {notification.resource_id}")
            outcome.debounced = True
            return outcome
        self._last_notification[notification.resource_id] = now
        await self.channels.touch(notification.channel_id, now)

        if notification.resource_state == ResourceState.NOT_EXISTS:
            logger.warning(
                f"Resource {notification.resource_id} reported gone for user {channel.user_id}; "
                "deletions will surface on the next incremental pass"
            )

        self.trigger(channel.user_id, channel.family)
        outcome.triggered = True
        logger.info(f"Sync triggered for {channel.family} user {channel.user_id}")
        return outcome

    async def _validate(
        self, notification: Notification, family: Optional[str], now: datetime
    ) -> WebhookChannel:
        """Match the notification to a registered, unexpired channel.

        Raises:
            WebhookValidationError: with the rejection reason as its message.
        """
        channel = await self.channels.get(notification.channel_id)
        if channel is None:
            raise WebhookValidationError("unknown channel")

        if channel.resource_id != notification.resource_id:
            logger.debug(
                f"Channel {notification.channel_id} expects resource {channel.resource_id}, "
                f"got {notification.resource_id}"
            )
            raise WebhookValidationError("resource mismatch")

        if family is not None and channel.family != family:
            raise WebhookValidationError("family mismatch")

        if channel.token and not hmac.compare_digest(channel.token, notification.token or ""):
            raise WebhookValidationError("token mismatch")

        if channel.expires_at <= now:
            await self.channels.delete(notification.channel_id)
            raise WebhookValidationError("channel expired")

        return channel

    def prune(self, now: Optional[datetime] = None) -> int:
        """Forget debounce entries older than twice the window."""
        now = now or self._clock()
        threshold = now - self.debounce_window * 2
        expired = [key for key, at in self._last_notification.items() if at < threshold]
        for key in expired:
            del self._last_notification[key]
        return len(expired)
