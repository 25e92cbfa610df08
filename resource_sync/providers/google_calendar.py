"""Google Calendar adapter."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from urllib.parse import quote

import httplib2
import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from resource_sync.providers.errors import translate_http_error, translate_response
from resource_sync.sync.errors import NetworkError, ProviderServerError
from resource_sync.sync.interfaces import ProviderClient
from resource_sync.sync.models import (
    EntityStatus,
    Page,
    RemoteRecord,
    SubResource,
    SubResourceListing,
    WatchResponse,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

API_BASE = "https://www.googleapis.com/calendar/v3"


def _to_millis(value: Optional[datetime]) -> int:
    return int(value.timestamp() * 1000) if value else 0


def _from_millis(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def event_to_record(event: dict) -> RemoteRecord:
    """Build a record from an ``events.list`` item.

    The revision is the ``updated`` timestamp in epoch milliseconds: Google's
    ``sequence`` only moves on time or attendee changes, so it cannot order
    plain edits. ``sequence`` is kept in the payload.
    """
    updated_at = parse_timestamp(event.get("updated"))
    conference = event.get("conferenceData") or {}
    return RemoteRecord(
        provider_id=event.get("id", ""),
        revision=_to_millis(updated_at),
        status=EntityStatus.CANCELLED if event.get("status") == "cancelled" else EntityStatus.ACTIVE,
        updated_at=updated_at,
        parent_id=event.get("recurringEventId"),
        recurrence=list(event.get("recurrence") or []),
        attendees=list(event.get("attendees") or []),
        entry_points=list(conference.get("entryPoints") or []),
        fallback_meeting_url=event.get("hangoutLink"),
        payload={
            key: event[key]
            for key in (
                "summary", "description", "location", "start", "end", "originalStartTime",
                "organizer", "creator", "transparency", "visibility", "htmlLink",
                "iCalUID", "sequence", "eventType",
            )
            if key in event
        },
    )


def calendar_to_sub_resource(item: dict) -> SubResource:
    return SubResource(
        provider_id=item["id"],
        name=item.get("summaryOverride") or item.get("summary"),
        is_selected=bool(item.get("selected", False)),
        is_primary=bool(item.get("primary", False)),
        is_hidden=bool(item.get("hidden", False)),
    )


class GoogleCalendarProvider(ProviderClient):
    """Calendar list, events, and push channels for one Google account."""

    family = "calendar"
    supports_push = True

    def __init__(
        self,
        access_token: str,
        *,
        page_size: int = 250,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.page_size = page_size
        self.credentials = Credentials(token=access_token)
        self.service = build("calendar", "v3", credentials=self.credentials, cache_discovery=False)
        self._http = http_client
        self._owns_http = http_client is None

    async def _execute(self, request, token_expired_statuses: Iterable[int] = (410,)) -> dict:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            raise translate_http_error(e, token_expired_statuses) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise NetworkError(f"Google Calendar request failed: {e}") from e

    async def list_sub_resources(self) -> SubResourceListing:
        items: list[SubResource] = []
        page_token = None
        while True:
            params: dict[str, Any] = {"maxResults": 250, "showHidden": True}
            if page_token:
                params["pageToken"] = page_token
            result = await self._execute(self.service.calendarList().list(**params))
            items.extend(calendar_to_sub_resource(item) for item in result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return SubResourceListing(items=items, next_sync_token=result.get("nextSyncToken"))

    async def list_entities(
        self,
        sub_resource_id: str,
        *,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
    ) -> Page:
        params: dict[str, Any] = {
            "calendarId": sub_resource_id,
            "maxResults": self.page_size,
            "showDeleted": True,
            "singleEvents": False,
        }
        if sync_token:
            params["syncToken"] = sync_token
        elif time_min:
            params["timeMin"] = time_min.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        if page_token:
            params["pageToken"] = page_token

        result = await self._execute(self.service.events().list(**params))
        return Page(
            items=[event_to_record(event) for event in result.get("items", [])],
            next_page_token=result.get("nextPageToken"),
            next_sync_token=result.get("nextSyncToken"),
        )

    async def _post(self, path: str, body: dict) -> httpx.Response:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=30.0)
        try:
            return await self._http.post(
                f"{API_BASE}{path}",
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                json=body,
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Google Calendar request failed: {e}") from e

    async def watch(
        self,
        sub_resource_id: str,
        callback_url: str,
        *,
        channel_id: str,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> WatchResponse:
        body = {"id": channel_id, "type": "web_hook", "address": callback_url}
        if token:
            body["token"] = token
        if expires_at:
            body["expiration"] = str(_to_millis(expires_at))

        response = await self._post(f"/calendars/{quote(sub_resource_id, safe='')}/events/watch", body)
        if response.status_code != 200:
            logger.error(f"Failed to register webhook: {response.text}")
            raise translate_response(response)

        result = response.json()
        if not result.get("resourceId"):
            raise ProviderServerError("Watch response carried no resource id")
        return WatchResponse(
            channel_id=result.get("id", channel_id),
            resource_id=result["resourceId"],
            expires_at=_from_millis(result.get("expiration")) or expires_at,
        )

    async def stop_watch(self, channel_id: str, resource_id: str) -> None:
        response = await self._post("/channels/stop", {"id": channel_id, "resourceId": resource_id})
        # 404 is OK - channel might already be stopped
        if response.status_code not in (200, 204, 404):
            raise translate_response(response)

    async def close(self) -> None:
        self.service.close()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
