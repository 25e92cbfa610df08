"""Sync engine module."""

from resource_sync.sync.backoff import ErrorBackoffController
from resource_sync.sync.engine import SyncEngine, UnknownFamilyError
from resource_sync.sync.models import SyncMode, SyncResult, SyncState, SyncStatus
from resource_sync.sync.notifications import WebhookNotificationHandler, parse_headers
from resource_sync.sync.orchestrator import SyncOrchestrator
from resource_sync.sync.reconciler import ChangeReconciler
from resource_sync.sync.tokens import SyncTokenStore
from resource_sync.sync.webhooks import WebhookLifecycleManager

__all__ = [
    "ChangeReconciler",
    "ErrorBackoffController",
    "SyncEngine",
    "SyncMode",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "SyncTokenStore",
    "UnknownFamilyError",
    "WebhookLifecycleManager",
    "WebhookNotificationHandler",
    "parse_headers",
]
