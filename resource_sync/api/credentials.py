"""Write path for access tokens issued by the external OAuth component."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from resource_sync.api.dependencies import (
    control_rate_limit,
    get_credentials,
    get_engine,
    limiter,
    require_api_key,
)
from resource_sync.auth.credentials import StoredCredentialProvider
from resource_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/credentials", tags=["credentials"], dependencies=[Depends(require_api_key)])


class CredentialRequest(BaseModel):
    access_token: str = Field(min_length=1)
    expires_in: Optional[int] = Field(default=None, gt=0)


@router.put("/{family}/{user_id}")
@limiter.limit(control_rate_limit)
async def store_credential(
    request: Request,
    family: str,
    user_id: str,
    body: CredentialRequest,
    engine: SyncEngine = Depends(get_engine),
    credentials: StoredCredentialProvider = Depends(get_credentials),
):
    """Store or replace the access token for an account."""
    if family not in engine.families:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown resource family: {family}",
        )
    await credentials.store_access_token(user_id, family, body.access_token, body.expires_in)
    logger.info(f"Stored credential for {family} user {user_id}")
    return {"status": "ok"}
