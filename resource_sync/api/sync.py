"""Sync status and control API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from resource_sync.api.dependencies import control_rate_limit, get_engine, limiter, require_api_key
from resource_sync.sync.engine import SyncEngine, UnknownFamilyError
from resource_sync.sync.models import SyncMode

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_api_key)])


class SyncRequest(BaseModel):
    """Manual sync trigger."""
    mode: SyncMode = SyncMode.AUTO


class SyncResultResponse(BaseModel):
    """Outcome of one sync run."""
    user_id: str
    family: str
    outcome: str
    strategy: Optional[str] = None
    sub_resources_processed: int
    created: int
    updated: int
    deleted: int
    stale: int
    tokens_persisted: int
    failed_records: list[str]
    degraded_sub_resources: list[str]
    error: Optional[str] = None
    skipped_reason: Optional[str] = None
    duration_ms: int


class SyncStateResponse(BaseModel):
    """Read-only sync status for one account."""
    user_id: str
    family: str
    status: str
    status_changed_at: Optional[str] = None
    last_sync_at: Optional[str] = None
    last_full_sync_at: Optional[str] = None
    has_resource_sync_token: bool
    sub_resources_with_tokens: list[str]
    error_count: int
    error_message: Optional[str] = None
    next_retry_at: Optional[str] = None
    webhook_channel_id: Optional[str] = None
    webhook_resource_id: Optional[str] = None
    webhook_expires_at: Optional[str] = None


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: int
    action: str
    status: str
    details: Optional[dict] = None
    created_at: str


class SyncLogResponse(BaseModel):
    """Sync log response."""
    entries: list[SyncLogEntry]


def _unknown_family(family: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Unknown resource family: {family}",
    )


@router.post("/{family}/{user_id}", response_model=SyncResultResponse)
@limiter.limit(control_rate_limit)
async def trigger_sync(
    request: Request,
    family: str,
    user_id: str,
    body: Optional[SyncRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Run a sync now and return its outcome."""
    mode = body.mode if body else SyncMode.AUTO
    try:
        result = await engine.run(user_id, family, mode)
    except UnknownFamilyError:
        raise _unknown_family(family)
    return result.to_dict()


@router.get("/{family}/{user_id}", response_model=SyncStateResponse)
@limiter.limit(control_rate_limit)
async def get_sync_state(
    request: Request,
    family: str,
    user_id: str,
    engine: SyncEngine = Depends(get_engine),
):
    """Get sync status for an account."""
    try:
        state = await engine.get_sync_state(user_id, family)
    except UnknownFamilyError:
        raise _unknown_family(family)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No sync state for this account",
        )
    return state.to_dict()


@router.post("/{family}/{user_id}/reset")
@limiter.limit(control_rate_limit)
async def reset_sync(
    request: Request,
    family: str,
    user_id: str,
    engine: SyncEngine = Depends(get_engine),
):
    """Clear the error count and unpause."""
    try:
        reset = await engine.reset(user_id, family)
    except UnknownFamilyError:
        raise _unknown_family(family)
    if not reset:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Account is unknown or a sync is in progress",
        )
    return {"status": "ok", "message": "Sync state reset"}


@router.post("/{family}/{user_id}/disconnect")
@limiter.limit(control_rate_limit)
async def disconnect(
    request: Request,
    family: str,
    user_id: str,
    engine: SyncEngine = Depends(get_engine),
):
    """Stop push channels and forget sync tokens for an account."""
    try:
        summary = await engine.disconnect(user_id, family)
    except UnknownFamilyError:
        raise _unknown_family(family)
    return {"status": "ok", **summary}


@router.get("/{family}/{user_id}/log", response_model=SyncLogResponse)
@limiter.limit(control_rate_limit)
async def get_sync_log(
    request: Request,
    family: str,
    user_id: str,
    limit: int = 50,
    engine: SyncEngine = Depends(get_engine),
):
    """Get recent sync activity for an account."""
    if family not in engine.families:
        raise _unknown_family(family)
    entries = await engine.sync_log.recent(user_id, family, limit=max(1, min(limit, 500)))
    return SyncLogResponse(entries=entries)
