"""API tests for the integrations endpoints.

Uses a minimal FastAPI app with the integrations router, in-memory
repositories behind a real IntegrationService, and bearer JWTs signed with
the test secret.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import OTHER_TENANT_ID, TENANT_ID, make_token
from src.revsignal.core.errors import IntegrationNotFound, SyncInProgress
from src.revsignal.integrations.schemas import (
    IntegrationStatus,
    Provider,
    SyncRecordError,
    SyncRunRead,
    SyncRunStatus,
    SyncSummary,
    SyncType,
)
from src.revsignal.integrations.service import IntegrationService


def _make_mock_app() -> FastAPI:
    from src.revsignal.api.v1.integrations import router

    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    return app


def _auth(role: str = "admin", tenant_id: str = TENANT_ID) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(tenant_id=tenant_id, role=role)}"}


def _summary(integration_id: str, **overrides) -> SyncSummary:
    run = SyncRunRead(
        id="run-1",
        integration_id=integration_id,
        sync_type=SyncType.FULL,
        status=overrides.pop("status", SyncRunStatus.COMPLETED),
        records_synced=overrides.pop("records_synced", 9),
        errors=overrides.pop("errors", []),
    )
    return SyncSummary(
        integration_id=integration_id,
        provider=Provider.HUBSPOT,
        sync_run=run,
        **overrides,
    )


@pytest_asyncio.fixture
async def api(settings, integration_repo):
    """Client, repository, engine mock and OAuth service mock."""
    app = _make_mock_app()
    engine = AsyncMock()
    oauth = AsyncMock()
    app.state.integration_service = IntegrationService(integration_repo, engine)
    app.state.oauth_service = oauth

    with patch("src.revsignal.api.deps.get_settings", return_value=settings):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client, integration_repo, engine, oauth


# ── Authentication ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_requires_bearer_token(api):
    client, *_ = api

    response = await client.get("/api/v1/integrations")

    assert response.status_code == 401
    assert response.json()["detail"] == "Not authenticated"


@pytest.mark.asyncio
async def test_rejects_token_with_wrong_signature(api):
    client, *_ = api
    token = make_token(secret="someone-else")

    response = await client.get(
        "/api/v1/integrations", headers={"Authorization": f"Bearer {token}"}
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_sync_requires_admin(api):
    client, repo, engine, _ = api
    repo.add()

    response = await client.post("/api/v1/integrations/hubspot/sync", headers=_auth("rep"))

    assert response.status_code == 403
    engine.run.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(api):
    client, *_ = api

    response = await client.get("/api/v1/integrations/pipedrive", headers=_auth())

    assert response.status_code == 422


# ── Reads ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_integrations_hides_tokens_and_other_tenants(api):
    client, repo, *_ = api
    repo.add(access_token="ciphertext", refresh_token="ciphertext-r")
    repo.add(tenant_id=OTHER_TENANT_ID, provider=Provider.SALESFORCE)

    response = await client.get("/api/v1/integrations", headers=_auth("rep"))

    assert response.status_code == 200
    body = response.json()
    assert [i["provider"] for i in body] == ["hubspot"]
    assert "access_token" not in body[0]
    assert "refresh_token" not in body[0]


@pytest.mark.asyncio
async def test_status_for_unconnected_provider(api):
    client, *_ = api

    response = await client.get("/api/v1/integrations/salesforce", headers=_auth("rep"))

    assert response.status_code == 200
    assert response.json() == {"connected": False, "provider": "salesforce"}


@pytest.mark.asyncio
async def test_sync_run_history(api):
    client, repo, *_ = api
    integration = repo.add()
    await repo.create_sync_run(integration.id, SyncType.FULL)
    await repo.create_sync_run(integration.id, SyncType.INCREMENTAL)

    response = await client.get(
        "/api/v1/integrations/hubspot/sync-runs?limit=1", headers=_auth("rep")
    )

    assert response.status_code == 200
    assert [r["sync_type"] for r in response.json()] == ["incremental"]


# ── Connect ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_authorize_returns_provider_url(api):
    client, _, _, oauth = api
    oauth.begin_authorization.return_value = "https://app.hubspot.com/oauth/authorize?state=s"

    response = await client.get("/api/v1/integrations/hubspot/authorize", headers=_auth())

    assert response.status_code == 200
    assert response.json() == {
        "authorize_url": "https://app.hubspot.com/oauth/authorize?state=s"
    }
    oauth.begin_authorization.assert_awaited_once_with(TENANT_ID, Provider.HUBSPOT)


@pytest.mark.asyncio
async def test_callback_redirects_without_authentication(api):
    client, _, _, oauth = api
    oauth.complete_authorization.return_value = (
        "https://app.example.com/dashboard/settings/integrations?success=ok"
    )

    response = await client.get(
        "/api/v1/integrations/hubspot/callback?code=abc&state=xyz"
    )

    assert response.status_code == 302
    assert response.headers["location"].endswith("?success=ok")
    oauth.complete_authorization.assert_awaited_once_with(
        Provider.HUBSPOT, "abc", "xyz", error=None, error_description=None
    )


@pytest.mark.asyncio
async def test_disconnect(api):
    client, _, _, oauth = api

    response = await client.delete("/api/v1/integrations/hubspot", headers=_auth())

    assert response.status_code == 204
    oauth.disconnect.assert_awaited_once_with(TENANT_ID, Provider.HUBSPOT)


@pytest.mark.asyncio
async def test_disconnect_missing_integration(api):
    client, _, _, oauth = api
    oauth.disconnect.side_effect = IntegrationNotFound("HubSpot integration not found")

    response = await client.delete("/api/v1/integrations/hubspot", headers=_auth())

    assert response.status_code == 404


# ── Sync ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sync_returns_counts_and_record_errors(api):
    client, repo, engine, _ = api
    integration = repo.add()
    error = SyncRecordError(
        entity="deal", external_id="d9", category="missing_owner", message="No owner found"
    )
    engine.run.return_value = _summary(
        integration.id, accounts=3, contacts=2, deals=4, errors=[error]
    )

    response = await client.post("/api/v1/integrations/hubspot/sync", headers=_auth())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert (body["accounts"], body["contacts"], body["deals"]) == (3, 2, 4)
    assert body["errors"][0]["category"] == "missing_owner"


@pytest.mark.asyncio
async def test_sync_provider_failure_is_reported_in_body(api):
    client, repo, engine, _ = api
    integration = repo.add()
    engine.run.return_value = _summary(
        integration.id,
        status=SyncRunStatus.FAILED,
        error_code="provider_api_error",
        error_message="HubSpot API error: outage",
    )

    response = await client.post("/api/v1/integrations/hubspot/sync", headers=_auth())

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["error_message"] == "HubSpot API error: outage"


@pytest.mark.asyncio
async def test_sync_with_expired_credentials_asks_for_reauthorization(api):
    client, repo, engine, _ = api
    integration = repo.add()
    engine.run.return_value = _summary(
        integration.id,
        status=SyncRunStatus.FAILED,
        error_code="credential_expired",
        error_message="HubSpot credentials expired, re-authorization required: invalid_grant",
    )

    response = await client.post("/api/v1/integrations/hubspot/sync", headers=_auth())

    assert response.status_code == 409
    body = response.json()
    assert body["reauthorize_url"] == "/api/v1/integrations/hubspot/authorize"
    assert body["sync"]["error_code"] == "credential_expired"


@pytest.mark.asyncio
async def test_sync_without_integration_is_404(api):
    client, *_ = api

    response = await client.post("/api/v1/integrations/salesforce/sync", headers=_auth())

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sync_while_syncing_is_409(api):
    client, repo, engine, _ = api
    repo.add(status=IntegrationStatus.SYNCING)
    engine.run.side_effect = SyncInProgress("HubSpot sync already in progress")

    response = await client.post("/api/v1/integrations/hubspot/sync", headers=_auth())

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_service_missing_from_state_is_503(settings):
    app = _make_mock_app()

    with patch("src.revsignal.api.deps.get_settings", return_value=settings):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/v1/integrations", headers=_auth())

    assert response.status_code == 503
    assert response.json()["detail"] == "Integration service not initialized"
