"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/test_encryption.key"
os.environ["PUBLIC_URL"] = "https://sync.example.com"
os.environ["API_KEY"] = "test-api-key"

from resource_sync.config import Settings  # noqa: E402
from resource_sync.database import Database  # noqa: E402
from resource_sync.sync.engine import SyncEngine  # noqa: E402
from resource_sync.sync.interfaces import CredentialProvider, ProviderClient  # noqa: E402
from resource_sync.sync.models import (  # noqa: E402
    Page,
    RemoteRecord,
    SubResource,
    SubResourceListing,
    WatchResponse,
    utcnow,
)


class FakeClock:
    """Settable clock handed to every component under test."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider(ProviderClient):
    """Scriptable provider.

    ``full_pages`` and ``incremental_pages`` map a sub-resource id to the list
    of pages returned for token-less and token-bearing listings; page tokens
    are the string index of the next page. ``errors`` maps
    ``(sub_resource_id, mode, page_index)`` to an exception raised once.
    """

    family = "calendar"
    supports_push = True

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.sub_resources = [SubResource(provider_id="cal-1", name="Work", is_selected=True, is_primary=True)]
        self.listing_token: Optional[str] = "calendars-token-1"
        self.full_pages: dict[str, list[Page]] = {}
        self.incremental_pages: dict[str, list[Page]] = {}
        self.errors: dict[tuple, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.watch_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.calls: list[tuple] = []
        self.watch_calls: list[dict] = []
        self.stop_calls: list[tuple[str, str]] = []
        self.closed = 0

    async def list_sub_resources(self) -> SubResourceListing:
        self.calls.append(("list_sub_resources",))
        if self.list_error:
            raise self.list_error
        return SubResourceListing(items=list(self.sub_resources), next_sync_token=self.listing_token)

    async def list_entities(self, sub_resource_id, *, page_token=None, sync_token=None, time_min=None) -> Page:
        mode = "incremental" if sync_token else "full"
        index = int(page_token) if page_token else 0
        self.calls.append(("list_entities", sub_resource_id, mode, index, sync_token))
        error = self.errors.pop((sub_resource_id, mode, index), None)
        if error:
            raise error
        source = self.incremental_pages if sync_token else self.full_pages
        pages = source.get(sub_resource_id) or [Page(items=[], next_sync_token=f"{sub_resource_id}-{mode}-token")]
        return pages[index]

    async def watch(self, sub_resource_id, callback_url, *, channel_id, token=None, expires_at=None) -> WatchResponse:
        self.watch_calls.append(
            {"sub_resource_id": sub_resource_id, "callback_url": callback_url, "channel_id": channel_id, "token": token}
        )
        if self.watch_error:
            raise self.watch_error
        return WatchResponse(
            channel_id=channel_id,
            resource_id=f"resource-{sub_resource_id}",
            expires_at=expires_at or self.clock() + timedelta(days=7),
        )

    async def stop_watch(self, channel_id, resource_id) -> None:
        self.stop_calls.append((channel_id, resource_id))
        if self.stop_error:
            raise self.stop_error

    async def close(self) -> None:
        self.closed += 1

    def entity_calls(self, mode: Optional[str] = None) -> list[tuple]:
        return [c for c in self.calls if c[0] == "list_entities" and (mode is None or c[2] == mode)]


class FakeCredentials(CredentialProvider):
    def __init__(self, token: Optional[str] = "access-token"):
        self.token = token
        self.requests: list[tuple[str, str]] = []

    async def get_valid_access_token(self, user_id, family):
        self.requests.append((user_id, family))
        return self.token


def make_pages(*item_lists: list[RemoteRecord], sync_token: Optional[str] = "next-token") -> list[Page]:
    """Chain pages with index page tokens; only the last one carries ``sync_token``."""
    pages = []
    for i, items in enumerate(item_lists):
        last = i == len(item_lists) - 1
        pages.append(
            Page(
                items=list(items),
                next_page_token=None if last else str(i + 1),
                next_sync_token=sync_token if last else None,
            )
        )
    return pages


def record(provider_id: str, revision: int = 1, **kwargs) -> RemoteRecord:
    return RemoteRecord(provider_id=provider_id, revision=revision, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_path=":memory:",
        public_url="https://sync.example.com",
        api_key="test-api-key",
        enabled_families="calendar",
    )


@pytest_asyncio.fixture
async def db():
    """In-memory database with the schema applied."""
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def provider(clock):
    return FakeProvider(clock)


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def engine(db, settings, provider, credentials, clock):
    return SyncEngine(db, settings, {"calendar": lambda _token: provider}, credentials, clock=clock)


@pytest.fixture
def orchestrator(engine):
    return engine.orchestrator("calendar")


@pytest.fixture
def pages():
    return make_pages


@pytest.fixture
def make_record():
    return record
