"""Gmail adapter.

The whole mailbox is one sub-resource. A full listing pages through
``users.messages.list``; incremental listing replays ``users.history.list``
from the stored history id, which Gmail rejects with 404 once it has aged
out.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from resource_sync.providers.errors import translate_http_error
from resource_sync.sync.errors import NetworkError
from resource_sync.sync.interfaces import ProviderClient
from resource_sync.sync.models import (
    EntityStatus,
    Page,
    RemoteRecord,
    SubResource,
    SubResourceListing,
)

logger = logging.getLogger(__name__)

MAILBOX_ID = "primary"
METADATA_HEADERS = ["From", "To", "Cc", "Subject", "Date", "Message-ID"]


def message_to_record(message: dict) -> RemoteRecord:
    """Build a record from a ``format=metadata`` message; the revision is its history id."""
    headers = {
        h["name"]: h["value"]
        for h in (message.get("payload") or {}).get("headers", [])
        if "name" in h and "value" in h
    }
    internal_date = message.get("internalDate")
    return RemoteRecord(
        provider_id=message.get("id", ""),
        revision=int(message.get("historyId") or 0),
        updated_at=(
            datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc) if internal_date else None
        ),
        payload={
            "thread_id": message.get("threadId"),
            "label_ids": message.get("labelIds", []),
            "snippet": message.get("snippet"),
            "size_estimate": message.get("sizeEstimate"),
            "headers": headers,
        },
    )


class GmailProvider(ProviderClient):
    family = "mailbox"
    # Gmail pushes through Pub/Sub rather than web_hook channels
    supports_push = False

    def __init__(self, access_token: str, *, page_size: int = 250):
        self.page_size = page_size
        self.credentials = Credentials(token=access_token)
        self.service = build("gmail", "v1", credentials=self.credentials, cache_discovery=False)
        # History id captured before a full listing began, handed out on its last page
        self._listing_history_id: dict[str, str] = {}

    async def _execute(self, request, token_expired_statuses: Iterable[int] = ()) -> dict:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise translate_http_error(e, token_expired_statuses) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise NetworkError(f"Gmail request failed: {e}") from e

    async def _profile(self) -> dict:
        return await self._execute(self.service.users().getProfile(userId="me"))

    async def list_sub_resources(self) -> SubResourceListing:
        profile = await self._profile()
        mailbox = SubResource(
            provider_id=MAILBOX_ID,
            name=profile.get("emailAddress"),
            is_selected=True,
            is_primary=True,
        )
        return SubResourceListing(items=[mailbox], next_sync_token=str(profile["historyId"]))

    async def list_entities(
        self,
        sub_resource_id: str,
        *,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> Page:
        if sync_token:
            return await self._list_history(sync_token, page_token)
        return await self._list_messages(sub_resource_id, page_token, time_min)

    async def _list_messages(
        self, sub_resource_id: str, page_token: Optional[str], time_min: Optional[datetime]
    ) -> Page:
        if page_token is None:
            profile = await self._profile()
            self._listing_history_id[sub_resource_id] = str(profile["historyId"])

        params: dict[str, Any] = {"userId": "me", "maxResults": self.page_size}
        if time_min:
            params["q"] = f"after:{int(time_min.timestamp())}"
        if page_token:
            params["pageToken"] = page_token
        result = await self._execute(self.service.users().messages().list(**params))

        records = []
        for ref in result.get("messages", []):
            message = await self._get_message(ref["id"])
            if message is not None:
                records.append(message_to_record(message))

        next_page_token = result.get("nextPageToken")
        next_sync_token = None
        if not next_page_token:
            next_sync_token = self._listing_history_id.pop(sub_resource_id, None)
        return Page(items=records, next_page_token=next_page_token, next_sync_token=next_sync_token)

    async def _list_history(self, start_history_id: str, page_token: Optional[str]) -> Page:
        params: dict[str, Any] = {
            "userId": "me",
            "startHistoryId": start_history_id,
            "maxResults": self.page_size,
        }
        if page_token:
            params["pageToken"] = page_token
        result = await self._execute(
            self.service.users().history().list(**params), token_expired_statuses=(404,)
        )

        deleted: dict[str, int] = {}
        changed: dict[str, int] = {}
        for entry in result.get("history", []):
            history_id = int(entry.get("id") or 0)
            for item in entry.get("messagesDeleted", []):
                message_id = item["message"]["id"]
                changed.pop(message_id, None)
                deleted[message_id] = history_id
            for key in ("messagesAdded", "labelsAdded", "labelsRemoved"):
                for item in entry.get(key, []):
                    message_id = item["message"]["id"]
                    if message_id not in deleted:
                        changed[message_id] = history_id

        records = [
            RemoteRecord(provider_id=message_id, revision=history_id, status=EntityStatus.CANCELLED)
            for message_id, history_id in deleted.items()
        ]
        for message_id, history_id in changed.items():
            message = await self._get_message(message_id)
            if message is None:
                records.append(
                    RemoteRecord(provider_id=message_id, revision=history_id, status=EntityStatus.CANCELLED)
                )
            else:
                records.append(message_to_record(message))

        next_page_token = result.get("nextPageToken")
        return Page(
            items=records,
            next_page_token=next_page_token,
            next_sync_token=None if next_page_token else str(result.get("historyId") or start_history_id),
        )

    async def _get_message(self, message_id: str) -> Optional[dict]:
        try:
            return await asyncio.to_thread(
                self.service.users().messages().get(
                    userId="me",
                    id=message_id,
                    format="metadata",
                    metadataHeaders=METADATA_HEADERS,
                ).execute
            )
        except HttpError as e:
            if e.resp.status == 404:
                # Deleted between listing and fetch
                return None
            raise translate_http_error(e) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise NetworkError(f"Gmail request failed: {e}") from e

    async def close(self) -> None:
        self.service.close()
