"""Tests for the OAuth connect flow: state store, token client and callback handling."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import TENANT_ID
from src.revsignal.core.errors import (
    IntegrationNotFound,
    OAuthStateError,
    ProviderAPIError,
    TokenExchangeError,
)
from src.revsignal.integrations.oauth import (
    OAuthClient,
    OAuthService,
    OAuthStateStore,
    get_provider_config,
)
from src.revsignal.integrations.schemas import IntegrationStatus, Provider, TokenSet


class FakeRedis:
    """Dict-backed stand-in for the two Redis calls the state store makes."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def getdel(self, key: str) -> str | None:
        return self.data.pop(key, None)


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ── Provider Config ──────────────────────────────────────────────────────────


def test_salesforce_authorize_url_carries_state_and_scopes(settings):
    config = get_provider_config(Provider.SALESFORCE, settings)
    url = config.authorize_redirect("abc123")

    assert url.startswith("https://login.salesforce.com/services/oauth2/authorize?")
    params = _query(url)
    assert params["state"] == "abc123"
    assert params["scope"] == "api refresh_token offline_access"
    assert params["client_id"] == "sf-client"
    assert params["redirect_uri"] == (
        "https://app.example.com/api/v1/integrations/salesforce/callback"
    )


def test_hubspot_config_requests_owner_scope(settings):
    config = get_provider_config(Provider.HUBSPOT, settings)
    assert "crm.objects.owners.read" in config.scopes
    assert config.token_url == "https://api.hubapi.com/oauth/v1/token"


# ── State Store ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_state_is_single_use():
    redis = FakeRedis()
    store = OAuthStateStore(redis, ttl_seconds=600)

    state = await store.issue(TENANT_ID, Provider.HUBSPOT)
    assert len(state) == 64
    assert redis.ttls[f"oauth_state:{state}"] == 600

    assert await store.consume(state, Provider.HUBSPOT) == TENANT_ID
    with pytest.raises(OAuthStateError):
        await store.consume(state, Provider.HUBSPOT)


@pytest.mark.asyncio
async def test_state_rejected_for_other_provider():
    store = OAuthStateStore(FakeRedis())
    state = await store.issue(TENANT_ID, Provider.HUBSPOT)

    with pytest.raises(OAuthStateError):
        await store.consume(state, Provider.SALESFORCE)


# ── Token Client ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_exchange_code_posts_form_and_parses_tokens(settings):
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(
            200,
            json={
                "access_token": "at",
                "refresh_token": "rt",
                "expires_in": 3600,
                "instance_url": "https://acme.my.salesforce.com",
            },
        )

    client = OAuthClient(settings, transport=httpx.MockTransport(handler))
    tokens = await client.exchange_code(Provider.SALESFORCE, "the-code")

    assert seen["url"] == "https://login.salesforce.com/services/oauth2/token"
    assert seen["form"]["grant_type"] == ["authorization_code"]
    assert seen["form"]["code"] == ["the-code"]
    assert tokens.access_token == "at"
    assert tokens.refresh_token == "rt"
    assert tokens.instance_url == "https://acme.my.salesforce.com"
    assert tokens.expires_at > datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_refresh_rejection_is_token_exchange_error(settings):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(400, json={"error": "invalid_grant"})
    )
    client = OAuthClient(settings, transport=transport)

    with pytest.raises(TokenExchangeError):
        await client.refresh(Provider.HUBSPOT, "revoked")


@pytest.mark.asyncio
async def test_token_endpoint_5xx_is_provider_error(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
    client = OAuthClient(settings, transport=transport)

    with pytest.raises(ProviderAPIError) as exc_info:
        await client.refresh(Provider.HUBSPOT, "rt")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_absent(settings):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"access_token": "new", "expires_in": 1800})
    )
    client = OAuthClient(settings, transport=transport)

    tokens = await client.refresh(Provider.HUBSPOT, "keep-me")
    assert tokens.refresh_token == "keep-me"


# ── OAuth Service ────────────────────────────────────────────────────────────


def _service(settings, integration_repo, cipher, client=None):
    store = OAuthStateStore(FakeRedis())
    return (
        OAuthService(settings, integration_repo, cipher, store, client or AsyncMock()),
        store,
    )


@pytest.mark.asyncio
async def test_callback_connects_and_encrypts_tokens(settings, integration_repo, cipher):
    client = AsyncMock()
    client.exchange_code.return_value = TokenSet(
        access_token="plain-access",
        refresh_token="plain-refresh",
        instance_url="https://acme.my.salesforce.com",
    )
    service, _ = _service(settings, integration_repo, cipher, client)

    authorize_url = await service.begin_authorization(TENANT_ID, Provider.SALESFORCE)
    state = _query(authorize_url)["state"]

    redirect = await service.complete_authorization(Provider.SALESFORCE, "code-1", state)

    assert redirect.startswith("https://app.example.com/dashboard/settings/integrations?")
    assert _query(redirect) == {"success": "Salesforce connected successfully"}

    integration = await integration_repo.get_integration(TENANT_ID, Provider.SALESFORCE)
    assert integration.status == IntegrationStatus.CONNECTED
    assert integration.access_token != "plain-access"
    assert cipher.decrypt(integration.access_token) == "plain-access"
    assert cipher.decrypt(integration.refresh_token) == "plain-refresh"
    assert integration.settings == {"instance_url": "https://acme.my.salesforce.com"}


@pytest.mark.asyncio
async def test_callback_with_unknown_state_redirects_with_error(settings, integration_repo, cipher):
    client = AsyncMock()
    service, _ = _service(settings, integration_repo, cipher, client)

    redirect = await service.complete_authorization(Provider.HUBSPOT, "code", "forged")

    assert _query(redirect) == {"error": "Invalid state parameter"}
    client.exchange_code.assert_not_called()
    assert integration_repo.integrations == {}


@pytest.mark.asyncio
async def test_callback_without_code_redirects_with_error(settings, integration_repo, cipher):
    service, store = _service(settings, integration_repo, cipher)
    state = await store.issue(TENANT_ID, Provider.HUBSPOT)

    redirect = await service.complete_authorization(Provider.HUBSPOT, None, state)

    assert _query(redirect) == {"error": "No authorization code"}


@pytest.mark.asyncio
async def test_callback_provider_denial_is_surfaced(settings, integration_repo, cipher):
    service, _ = _service(settings, integration_repo, cipher)

    redirect = await service.complete_authorization(
        Provider.HUBSPOT, None, None, error="access_denied", error_description="User cancelled"
    )

    assert _query(redirect) == {"error": "User cancelled"}


@pytest.mark.asyncio
async def test_callback_exchange_failure_redirects_with_error(settings, integration_repo, cipher):
    client = AsyncMock()
    client.exchange_code.side_effect = TokenExchangeError(json.dumps({"error": "bad_code"}))
    service, store = _service(settings, integration_repo, cipher, client)
    state = await store.issue(TENANT_ID, Provider.HUBSPOT)

    redirect = await service.complete_authorization(Provider.HUBSPOT, "code", state)

    assert _query(redirect) == {"error": "Failed to connect HubSpot"}
    assert integration_repo.integrations == {}


@pytest.mark.asyncio
async def test_reconnect_revives_disconnected_integration(settings, integration_repo, cipher):
    client = AsyncMock()
    client.exchange_code.return_value = TokenSet(access_token="a2", refresh_token="r2")
    service, store = _service(settings, integration_repo, cipher, client)
    existing = integration_repo.add(access_token=cipher.encrypt("a1"))

    await service.disconnect(TENANT_ID, Provider.HUBSPOT)
    assert await integration_repo.get_integration(TENANT_ID, Provider.HUBSPOT) is None

    state = await store.issue(TENANT_ID, Provider.HUBSPOT)
    await service.complete_authorization(Provider.HUBSPOT, "code", state)

    revived = await integration_repo.get_integration(TENANT_ID, Provider.HUBSPOT)
    assert revived.id == existing.id
    assert revived.status == IntegrationStatus.CONNECTED


@pytest.mark.asyncio
async def test_disconnect_missing_integration_raises(settings, integration_repo, cipher):
    service, _ = _service(settings, integration_repo, cipher)

    with pytest.raises(IntegrationNotFound):
        await service.disconnect(TENANT_ID, Provider.SALESFORCE)
