"""Translation of Google API failures into the sync error taxonomy."""

import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Iterable, Optional

import httpx
from googleapiclient.errors import HttpError

from resource_sync.sync.errors import (
    AuthFailureError,
    ProviderServerError,
    RateLimitedError,
    SyncError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"})


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def _error_details(content: Any) -> tuple[Optional[str], str]:
    """(reason, message) from a Google JSON error body."""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        body = json.loads(content) if isinstance(content, str) else content
    except ValueError:
        return None, str(content or "")[:200]
    if not isinstance(body, dict):
        return None, ""
    error = body.get("error") or {}
    if isinstance(error, str):
        return None, body.get("error_description") or error
    errors = error.get("errors") or [{}]
    return errors[0].get("reason"), error.get("message", "")


def translate_status(
    status_code: int,
    reason: Optional[str],
    message: str,
    retry_after: Optional[float] = None,
    token_expired_statuses: Iterable[int] = (410,),
) -> SyncError:
    text = f"HTTP {status_code}: {message or reason or 'no details'}"
    if status_code in tuple(token_expired_statuses):
        return TokenExpiredError(text, status_code=status_code)
    if status_code == 429 or (status_code == 403 and reason in RATE_LIMIT_REASONS):
        return RateLimitedError(text, retry_after=retry_after, status_code=status_code)
    if status_code in (401, 403):
        return AuthFailureError(text, status_code=status_code)
    return ProviderServerError(text, status_code=status_code)


def translate_http_error(error: HttpError, token_expired_statuses: Iterable[int] = (410,)) -> SyncError:
    """Map a ``googleapiclient`` error onto the taxonomy."""
    reason, message = _error_details(error.content)
    retry_after = parse_retry_after(error.resp.get("retry-after"))
    return translate_status(
        error.resp.status, reason, message, retry_after, token_expired_statuses
    )


def translate_response(response: httpx.Response, token_expired_statuses: Iterable[int] = (410,)) -> SyncError:
    """Map a failed raw ``httpx`` response onto the taxonomy."""
    reason, message = _error_details(response.content)
    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    return translate_status(
        response.status_code, reason, message, retry_after, token_expired_statuses
    )
