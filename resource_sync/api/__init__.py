"""API endpoints module."""

from fastapi import APIRouter

from resource_sync.api.credentials import router as credentials_router
from resource_sync.api.sync import router as sync_router
from resource_sync.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api")

api_router.include_router(sync_router)
api_router.include_router(credentials_router)

__all__ = ["api_router", "webhooks_router"]
