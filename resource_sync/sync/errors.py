"""Error taxonomy for synchronization runs.

Provider adapters translate provider-specific failures into these types so
the orchestrator can decide on retry, backoff, and pause without knowing
which provider raised them.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync failures."""

    def __init__(
        self,
        message: str = "",
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.retry_after = retry_after
        self.status_code = status_code


class TokenExpiredError(SyncError):
    """The provider rejected a sync token; a full resync of that scope is required."""


class RateLimitedError(SyncError):
    """The provider throttled the request. ``retry_after`` is in seconds when known."""


class AuthFailureError(SyncError):
    """No usable credential, or the provider rejected it."""


class NetworkError(SyncError):
    """Transport failure talking to the provider."""


class ProviderServerError(SyncError):
    """The provider failed or returned something the engine cannot use."""


class ReconciliationError(SyncError):
    """A single record could not be mapped to local storage."""

    def __init__(self, provider_id: Optional[str], message: str):
        super().__init__(message)
        self.provider_id = provider_id


class WebhookValidationError(SyncError):
    """Malformed or unmatched push notification."""
