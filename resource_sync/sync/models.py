"""Data model shared by the synchronization engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utcnow() -> datetime:
    """Timezone-aware current time; the default clock for every component."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored ISO timestamp, treating naive values as UTC."""
    if value is None or value == "":
        return None
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    ERROR = "error"
    PAUSED = "paused"


# Any of these means a run holds the (user, family) key.
ACTIVE_STATUSES = frozenset({SyncStatus.SYNCING, SyncStatus.FULL_SYNC, SyncStatus.INCREMENTAL_SYNC})


class SyncMode(str, Enum):
    AUTO = "auto"
    FULL = "full"
    INCREMENTAL = "incremental"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class EntityKind(str, Enum):
    SINGLE = "single"
    MASTER = "master"
    INSTANCE = "instance"


class ResourceState(str, Enum):
    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


@dataclass
class SyncState:
    user_id: str
    family: str
    status: SyncStatus = SyncStatus.IDLE
    status_changed_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None
    resource_sync_token: Optional[str] = None
    sub_resource_tokens: dict[str, str] = field(default_factory=dict)
    error_count: int = 0
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    webhook_channel_id: Optional[str] = None
    webhook_resource_id: Optional[str] = None
    webhook_expires_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "family": self.family,
            "status": self.status.value,
            "status_changed_at": format_timestamp(self.status_changed_at),
            "last_sync_at": format_timestamp(self.last_sync_at),
            "last_full_sync_at": format_timestamp(self.last_full_sync_at),
            "has_resource_sync_token": self.resource_sync_token is not None,
            "sub_resources_with_tokens": sorted(self.sub_resource_tokens),
            "error_count": self.error_count,
            "error_message": self.error_message,
            "next_retry_at": format_timestamp(self.next_retry_at),
            "webhook_channel_id": self.webhook_channel_id,
            "webhook_resource_id": self.webhook_resource_id,
            "webhook_expires_at": format_timestamp(self.webhook_expires_at),
        }


@dataclass
class SubResource:
    """A calendar, or the single mailbox of a mail account."""

    provider_id: str
    name: Optional[str] = None
    is_selected: bool = False
    is_primary: bool = False
    is_hidden: bool = False
    is_accessible: bool = True
    id: Optional[int] = None

    @property
    def participates(self) -> bool:
        # is_hidden only affects user-facing aggregation
        return self.is_accessible and (self.is_selected or self.is_primary)


@dataclass
class SubResourceListing:
    items: list[SubResource]
    next_sync_token: Optional[str] = None


@dataclass
class RemoteRecord:
    """One record as delivered by a provider adapter, before reconciliation."""

    provider_id: str
    revision: int
    status: EntityStatus = EntityStatus.ACTIVE
    updated_at: Optional[datetime] = None
    parent_id: Optional[str] = None
    recurrence: list[str] = field(default_factory=list)
    attendees: list[dict[str, Any]] = field(default_factory=list)
    entry_points: list[dict[str, Any]] = field(default_factory=list)
    fallback_meeting_url: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class EntityRecord:
    """Local storage shape of a synced event or message."""

    provider_id: str
    sub_resource_id: str
    revision: int
    status: EntityStatus = EntityStatus.ACTIVE
    kind: EntityKind = EntityKind.SINGLE
    parent_id: Optional[str] = None
    recurrence: list[str] = field(default_factory=list)
    attendees: list[dict[str, Any]] = field(default_factory=list)
    response_tally: dict[str, int] = field(default_factory=dict)
    self_response: Optional[str] = None
    meeting_url: Optional[str] = None
    updated_at: Optional[datetime] = None
    payload: dict[str, Any] = field(default_factory=dict)
    local_id: Optional[int] = None


@dataclass
class Page:
    """One page of provider results.

    ``next_sync_token`` is only ever present on the terminal page, i.e. when
    ``next_page_token`` is absent.
    """

    items: list[RemoteRecord]
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.next_page_token


@dataclass
class WatchResponse:
    channel_id: str
    resource_id: str
    expires_at: datetime


@dataclass
class WebhookChannel:
    channel_id: str
    resource_id: str
    user_id: str
    family: str
    sub_resource_id: str
    expires_at: datetime
    token: Optional[str] = None
    last_notification_at: Optional[datetime] = None


@dataclass
class SyncResult:
    user_id: str
    family: str
    outcome: str = "pending"
    strategy: Optional[SyncStatus] = None
    sub_resources_processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    stale: int = 0
    tokens_persisted: int = 0
    failed_records: list[str] = field(default_factory=list)
    degraded_sub_resources: list[str] = field(default_factory=list)
    error: Optional[str] = None
    skipped_reason: Optional[str] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    def skip(self, reason: str) -> "SyncResult":
        self.outcome = "skipped"
        self.skipped_reason = reason
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "family": self.family,
            "outcome": self.outcome,
            "strategy": self.strategy.value if self.strategy else None,
            "sub_resources_processed": self.sub_resources_processed,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "stale": self.stale,
            "tokens_persisted": self.tokens_persisted,
            "failed_records": list(self.failed_records),
            "degraded_sub_resources": list(self.degraded_sub_resources),
            "error": self.error,
            "skipped_reason": self.skipped_reason,
            "duration_ms": self.duration_ms,
        }
