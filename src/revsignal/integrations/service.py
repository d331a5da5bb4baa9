"""Integration service -- tenant-facing operations over connected CRMs.

Wraps the IntegrationRepository and ReconciliationEngine behind the calls
the HTTP layer makes: list, status, sync-run history and trigger_sync.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.revsignal.core.errors import IntegrationNotFound
from src.revsignal.integrations.reconciliation import ReconciliationEngine
from src.revsignal.integrations.repository import IntegrationRepository
from src.revsignal.integrations.schemas import (
    IntegrationRead,
    IntegrationStatus,
    Provider,
    SyncRunRead,
    SyncSummary,
)

logger = structlog.get_logger(__name__)

MAX_SYNC_RUNS = 50


class IntegrationService:
    """Read integration state and trigger sync cycles.

    Args:
        repository: Integration persistence.
        engine: Reconciliation Engine used by trigger_sync.
    """

    def __init__(
        self, repository: IntegrationRepository, engine: ReconciliationEngine
    ) -> None:
        self._repository = repository
        self._engine = engine

    async def list_integrations(self, tenant_id: str) -> list[IntegrationRead]:
        return await self._repository.list_integrations(tenant_id)

    async def get_status(self, tenant_id: str, provider: Provider) -> dict[str, Any]:
        """Connection status for the settings surface. Never exposes tokens."""
        integration = await self._repository.get_integration(tenant_id, provider)
        if integration is None:
            return {"connected": False, "provider": provider.value}
        return {
            "connected": integration.status == IntegrationStatus.CONNECTED,
            "id": integration.id,
            "provider": provider.value,
            "status": integration.status.value,
            "last_sync_at": integration.last_sync_at,
            "sync_error": integration.sync_error,
            "settings": integration.settings,
        }

    async def list_sync_runs(
        self, tenant_id: str, provider: Provider, limit: int = 10
    ) -> list[SyncRunRead]:
        """Most recent sync runs first; empty when the provider is not connected."""
        integration = await self._repository.get_integration(tenant_id, provider)
        if integration is None:
            return []
        limit = max(1, min(limit, MAX_SYNC_RUNS))
        return await self._repository.list_sync_runs(integration.id, limit)

    async def trigger_sync(self, tenant_id: str, provider: Provider) -> SyncSummary:
        """Run one reconciliation cycle for the tenant's integration.

        Raises:
            IntegrationNotFound: No live integration, or it was disconnected.
            SyncInProgress: A cycle is already running for this integration.
        """
        integration = await self._repository.get_integration(tenant_id, provider)
        if integration is None or integration.status == IntegrationStatus.DISCONNECTED:
            raise IntegrationNotFound(
                f"{provider.display_name} integration not found or not connected"
            )

        logger.info(
            "sync.triggered",
            tenant_id=tenant_id,
            provider=provider.value,
            integration_id=integration.id,
        )
        return await self._engine.run(integration)
