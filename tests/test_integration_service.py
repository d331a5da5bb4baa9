"""Tests for IntegrationService status reads and sync triggering."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import OTHER_TENANT_ID, TENANT_ID
from src.revsignal.core.errors import IntegrationNotFound, SyncInProgress
from src.revsignal.integrations.schemas import (
    IntegrationStatus,
    Provider,
    SyncType,
)
from src.revsignal.integrations.service import IntegrationService


@pytest.fixture
def engine() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(integration_repo, engine) -> IntegrationService:
    return IntegrationService(integration_repo, engine)


@pytest.mark.asyncio
async def test_status_of_unconnected_provider(service):
    status = await service.get_status(TENANT_ID, Provider.SALESFORCE)
    assert status == {"connected": False, "provider": "salesforce"}


@pytest.mark.asyncio
async def test_status_never_exposes_tokens(service, integration_repo):
    integration_repo.add(
        access_token="ciphertext-a",
        refresh_token="ciphertext-r",
        sync_error=None,
        settings={"instance_url": "https://acme.my.salesforce.com"},
        provider=Provider.SALESFORCE,
    )

    status = await service.get_status(TENANT_ID, Provider.SALESFORCE)

    assert status["connected"] is True
    assert status["status"] == "connected"
    assert "access_token" not in status
    assert "refresh_token" not in status
    assert "ciphertext-a" not in str(status)


@pytest.mark.asyncio
async def test_status_in_error_is_not_connected(service, integration_repo):
    integration_repo.add(status=IntegrationStatus.ERROR, sync_error="token revoked")

    status = await service.get_status(TENANT_ID, Provider.HUBSPOT)

    assert status["connected"] is False
    assert status["sync_error"] == "token revoked"


@pytest.mark.asyncio
async def test_list_integrations_is_tenant_scoped(service, integration_repo):
    integration_repo.add()
    integration_repo.add(tenant_id=OTHER_TENANT_ID)

    integrations = await service.list_integrations(TENANT_ID)

    assert [i.tenant_id for i in integrations] == [TENANT_ID]


@pytest.mark.asyncio
async def test_trigger_sync_delegates_to_engine(service, integration_repo, engine):
    integration = integration_repo.add()
    engine.run.return_value = "summary"

    assert await service.trigger_sync(TENANT_ID, Provider.HUBSPOT) == "summary"
    engine.run.assert_awaited_once_with(integration)


@pytest.mark.asyncio
async def test_trigger_sync_without_integration(service, engine):
    with pytest.raises(IntegrationNotFound):
        await service.trigger_sync(TENANT_ID, Provider.HUBSPOT)
    engine.run.assert_not_called()


@pytest.mark.asyncio
async def test_trigger_sync_after_disconnect(service, integration_repo, engine):
    integration_repo.add()
    await integration_repo.disconnect(TENANT_ID, Provider.HUBSPOT)

    with pytest.raises(IntegrationNotFound):
        await service.trigger_sync(TENANT_ID, Provider.HUBSPOT)


@pytest.mark.asyncio
async def test_trigger_sync_while_syncing(service, integration_repo, engine):
    integration_repo.add(status=IntegrationStatus.SYNCING)
    engine.run.side_effect = SyncInProgress("HubSpot sync already in progress")

    with pytest.raises(SyncInProgress):
        await service.trigger_sync(TENANT_ID, Provider.HUBSPOT)


@pytest.mark.asyncio
async def test_sync_runs_newest_first_with_clamped_limit(service, integration_repo):
    integration = integration_repo.add()
    for _ in range(3):
        await integration_repo.create_sync_run(integration.id, SyncType.INCREMENTAL)

    runs = await service.list_sync_runs(TENANT_ID, Provider.HUBSPOT, limit=0)
    assert len(runs) == 1

    runs = await service.list_sync_runs(TENANT_ID, Provider.HUBSPOT, limit=100)
    assert len(runs) == 3
    assert runs[0].started_at > runs[-1].started_at


@pytest.mark.asyncio
async def test_sync_runs_for_unconnected_provider(service):
    assert await service.list_sync_runs(TENANT_ID, Provider.SALESFORCE) == []
