"""Collaborator interfaces consumed by the sync engine."""

from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Callable, Iterable, Mapping, Optional

from resource_sync.sync.models import (
    EntityRecord,
    Page,
    SubResource,
    SubResourceListing,
    WatchResponse,
)


class ProviderClient(abc.ABC):
    """Adapter over one external provider's API.

    Implementations translate provider failures into
    :mod:`resource_sync.sync.errors` types, in particular
    :class:`~resource_sync.sync.errors.TokenExpiredError` for rejected sync
    tokens.
    """

    family: str = ""
    supports_push: bool = False

    @abc.abstractmethod
    async def list_sub_resources(self) -> SubResourceListing:
        """Return every sub-resource visible to the account."""
        ...

    @abc.abstractmethod
    async def list_entities(
        self,
        sub_resource_id: str,
        *,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> Page:
        """Return one page of records; ``sync_token`` selects incremental mode."""
        ...

    async def watch(
        self,
        sub_resource_id: str,
        callback_url: str,
        *,
        channel_id: str,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> WatchResponse:
        raise NotImplementedError(f"{type(self).__name__} does not support push notifications")

    async def stop_watch(self, channel_id: str, resource_id: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support push notifications")

    async def close(self) -> None:
        """Release any per-run resources."""
        return None


ProviderFactory = Callable[[str], ProviderClient]


class LocalStore(abc.ABC):
    """Owner of sub-resource and entity rows.

    Write methods must be called inside :meth:`transaction`; the block is
    committed as a unit.
    """

    @abc.abstractmethod
    def transaction(self) -> AbstractAsyncContextManager:
        ...

    @abc.abstractmethod
    async def list_sub_resources(self, user_id: str, family: str) -> list[SubResource]:
        ...

    @abc.abstractmethod
    async def upsert_sub_resources(
        self, user_id: str, family: str, rows: Iterable[SubResource]
    ) -> list[SubResource]:
        ...

    @abc.abstractmethod
    async def mark_sub_resources_inaccessible(
        self, user_id: str, family: str, keep_provider_ids: Iterable[str]
    ) -> list[str]:
        """Flag every sub-resource not in ``keep_provider_ids``; return the flagged ids."""
        ...

    @abc.abstractmethod
    async def get_entity_revisions(
        self, user_id: str, family: str, sub_resource_id: str, provider_ids: Iterable[str]
    ) -> dict[str, int]:
        ...

    @abc.abstractmethod
    async def upsert_entities(
        self, user_id: str, family: str, sub_resource_id: str, rows: Iterable[EntityRecord]
    ) -> int:
        ...

    @abc.abstractmethod
    async def soft_delete_entities(
        self, user_id: str, family: str, sub_resource_id: str, deletions: Mapping[str, int]
    ) -> int:
        """Soft-delete by provider id, raising each stored revision to the cancellation's."""
        ...


class CredentialProvider(abc.ABC):
    """Source of bearer credentials; refresh is its own concern."""

    @abc.abstractmethod
    async def get_valid_access_token(self, user_id: str, family: str) -> Optional[str]:
        """Return a usable access token, or ``None`` when the account cannot sync."""
        ...
