"""Tests for the HTTP surface."""

import httpx
import pytest
import pytest_asyncio

from resource_sync.api.dependencies import limiter
from resource_sync.auth.credentials import StoredCredentialProvider
from resource_sync.config import get_settings
from resource_sync.encryption import CredentialCipher, generate_encryption_key
from resource_sync.main import create_app

AUTH = {"X-API-Key": "test-api-key"}
USER = "user-1"


@pytest.fixture
def stored_credentials(db, clock):
    return StoredCredentialProvider(db, CredentialCipher(generate_encryption_key()), clock=clock)


@pytest.fixture
def app(engine, stored_credentials, settings):
    limiter.reset()
    application = create_app()
    application.state.engine = engine
    application.state.credentials = stored_credentials
    application.dependency_overrides[get_settings] = lambda: settings
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected", "families": ["calendar"]}


@pytest.mark.asyncio
async def test_health_without_engine():
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        response = await http.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_webhook_always_answers_ok(client):
    """Malformed, unknown, and unmatched notifications all get 200."""
    for family, headers in [
        ("calendar", {}),
        ("calendar", {"X-Goog-Channel-ID": "nope", "X-Goog-Resource-ID": "r", "X-Goog-Resource-State": "exists"}),
        ("unknown-family", {"X-Goog-Resource-State": "sync"}),
    ]:
        response = await client.post(f"/api/webhooks/{family}", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_webhook_is_not_rate_limited(client, settings, mocker):
    """Pushes share the provider's source addresses, so bursts still get 200."""
    mocker.patch(
        "resource_sync.api.dependencies.get_settings",
        return_value=settings.model_copy(update={"rate_limit_per_minute": 2}),
    )
    headers = {"X-Goog-Channel-ID": "nope", "X-Goog-Resource-ID": "r", "X-Goog-Resource-State": "exists"}

    codes = [(await client.post("/api/webhooks/calendar", headers=headers)).status_code for _ in range(5)]

    assert codes == [200] * 5


@pytest.mark.asyncio
async def test_control_api_is_rate_limited(client, settings, mocker):
    mocker.patch(
        "resource_sync.api.dependencies.get_settings",
        return_value=settings.model_copy(update={"rate_limit_per_minute": 2}),
    )

    codes = [(await client.get(f"/api/sync/calendar/{USER}", headers=AUTH)).status_code for _ in range(3)]

    assert codes == [404, 404, 429]


@pytest.mark.asyncio
async def test_webhook_triggers_sync(client, engine, provider, monkeypatch):
    enqueued = []
    monkeypatch.setattr(
        "resource_sync.sync.engine.create_background_task",
        lambda coro, task_name="background_task": enqueued.append(coro),
    )
    channel = await engine.webhooks.register(
        provider, USER, "calendar", "cal-1", "https://sync.example.com/api/webhooks/calendar"
    )

    response = await client.post(
        "/api/webhooks/calendar",
        headers={
            "X-Goog-Channel-ID": channel.channel_id,
            "X-Goog-Resource-ID": channel.resource_id,
            "X-Goog-Resource-State": "exists",
            "X-Goog-Channel-Token": channel.token,
        },
    )

    assert response.status_code == 200
    assert len(enqueued) == 1
    assert (await enqueued[0]).succeeded


@pytest.mark.asyncio
async def test_control_api_requires_key(client):
    assert (await client.get(f"/api/sync/calendar/{USER}")).status_code == 401
    response = await client.get(f"/api/sync/calendar/{USER}", headers={"X-API-Key": "wrong"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_control_api_disabled_without_key(client, app, settings):
    app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"api_key": None})

    response = await client.get(f"/api/sync/calendar/{USER}", headers=AUTH)

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_trigger_sync(client):
    response = await client.post(f"/api/sync/calendar/{USER}", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "success"
    assert body["strategy"] == "full_sync"
    assert body["tokens_persisted"] == 2


@pytest.mark.asyncio
async def test_trigger_sync_with_mode(client):
    await client.post(f"/api/sync/calendar/{USER}", headers=AUTH)

    response = await client.post(f"/api/sync/calendar/{USER}", headers=AUTH, json={"mode": "full"})
    assert response.json()["strategy"] == "full_sync"

    response = await client.post(f"/api/sync/calendar/{USER}", headers=AUTH, json={"mode": "sideways"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_family_is_404(client):
    assert (await client.post(f"/api/sync/mailbox/{USER}", headers=AUTH)).status_code == 404
    assert (await client.get(f"/api/sync/mailbox/{USER}", headers=AUTH)).status_code == 404
    assert (await client.get(f"/api/sync/mailbox/{USER}/log", headers=AUTH)).status_code == 404


@pytest.mark.asyncio
async def test_get_sync_state(client):
    assert (await client.get(f"/api/sync/calendar/{USER}", headers=AUTH)).status_code == 404

    await client.post(f"/api/sync/calendar/{USER}", headers=AUTH)
    response = await client.get(f"/api/sync/calendar/{USER}", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "idle"
    assert body["has_resource_sync_token"] is True
    assert body["sub_resources_with_tokens"] == ["cal-1"]
    assert "resource_sync_token" not in body


@pytest.mark.asyncio
async def test_reset(client, engine):
    assert (await client.post(f"/api/sync/calendar/{USER}/reset", headers=AUTH)).status_code == 409

    await engine.tokens.get_or_create(USER, "calendar")
    response = await client.post(f"/api/sync/calendar/{USER}/reset", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_disconnect(client):
    await client.post(f"/api/sync/calendar/{USER}", headers=AUTH)

    response = await client.post(f"/api/sync/calendar/{USER}/disconnect", headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "channels_stopped": 1}


@pytest.mark.asyncio
async def test_sync_log(client):
    await client.post(f"/api/sync/calendar/{USER}", headers=AUTH)

    response = await client.get(f"/api/sync/calendar/{USER}/log", params={"limit": 5}, headers=AUTH)

    assert response.status_code == 200
    entries = response.json()["entries"]
    assert entries[0]["action"] == "full_sync"
    assert entries[0]["details"]["outcome"] == "success"


@pytest.mark.asyncio
async def test_store_credential(client, stored_credentials):
    response = await client.put(
        f"/api/credentials/calendar/{USER}",
        headers=AUTH,
        json={"access_token": "ya29.token", "expires_in": 3600},
    )

    assert response.status_code == 200
    assert await stored_credentials.get_valid_access_token(USER, "calendar") == "ya29.token"


@pytest.mark.asyncio
async def test_store_credential_validation(client):
    url = f"/api/credentials/calendar/{USER}"
    assert (await client.put(url, headers=AUTH, json={"access_token": ""})).status_code == 422
    assert (await client.put(url, json={"access_token": "t"})).status_code == 401
    response = await client.put(f"/api/credentials/mailbox/{USER}", headers=AUTH, json={"access_token": "t"})
    assert response.status_code == 404
