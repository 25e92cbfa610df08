"""Shared FastAPI dependencies."""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from resource_sync.auth.credentials import StoredCredentialProvider
from resource_sync.config import Settings, get_settings
from resource_sync.sync.engine import SyncEngine

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def control_rate_limit() -> str:
    """Per-client limit for the control API; push notifications are never limited."""
    return f"{get_settings().rate_limit_per_minute}/minute"


def get_engine(request: Request) -> SyncEngine:
    """The engine built in the application lifespan."""
    return request.app.state.engine


def get_credentials(request: Request) -> StoredCredentialProvider:
    return request.app.state.credentials


async def require_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for the control API."""
    if not settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Control API is disabled",
        )
    if not x_api_key or not hmac.compare_digest(settings.api_key, x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
