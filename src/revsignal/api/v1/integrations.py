"""REST API endpoints for CRM integrations.

Connect (authorize + callback), status, sync trigger, sync-run history and
disconnect. The OAuth callback is the only unauthenticated route: the tenant
is recovered from the single-use CSRF state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from src.revsignal.api.deps import (
    get_integration_service,
    get_oauth_service,
    get_tenant,
    require_admin,
)
from src.revsignal.core.errors import IntegrationNotFound, SyncInProgress
from src.revsignal.core.tenant import TenantContext
from src.revsignal.integrations.schemas import (
    IntegrationRead,
    Provider,
    SyncRecordError,
    SyncRunRead,
    SyncSummary,
)

router = APIRouter(prefix="/integrations", tags=["integrations"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class IntegrationResponse(BaseModel):
    """Integration without credential fields."""

    id: str
    provider: Provider
    status: str
    last_sync_at: datetime | None = None
    sync_error: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class AuthorizeResponse(BaseModel):
    authorize_url: str


class SyncResponse(BaseModel):
    """Outcome of one sync cycle: counts, per-record errors and run status."""

    integration_id: str
    provider: Provider
    sync_run_id: str
    sync_type: str
    status: str
    accounts: int = 0
    contacts: int = 0
    deals: int = 0
    records_synced: int = 0
    errors: list[SyncRecordError] = Field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None


def _integration_to_response(integration: IntegrationRead) -> IntegrationResponse:
    return IntegrationResponse(
        id=integration.id,
        provider=integration.provider,
        status=integration.status.value,
        last_sync_at=integration.last_sync_at,
        sync_error=integration.sync_error,
        settings=integration.settings,
        created_at=integration.created_at,
    )


def _summary_to_response(summary: SyncSummary) -> SyncResponse:
    run = summary.sync_run
    return SyncResponse(
        integration_id=summary.integration_id,
        provider=summary.provider,
        sync_run_id=run.id,
        sync_type=run.sync_type.value,
        status=run.status.value,
        accounts=summary.accounts,
        contacts=summary.contacts,
        deals=summary.deals,
        records_synced=run.records_synced,
        errors=run.errors,
        error_code=summary.error_code,
        error_message=summary.error_message,
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_integration_service),
):
    integrations = await service.list_integrations(tenant.tenant_id)
    return [_integration_to_response(i) for i in integrations]


@router.get("/{provider}")
async def get_integration_status(
    provider: Provider,
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_integration_service),
):
    """Connection status for one provider. Never includes tokens."""
    return await service.get_status(tenant.tenant_id, provider)


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
async def authorize(
    provider: Provider,
    tenant: TenantContext = Depends(require_admin),
    oauth: Any = Depends(get_oauth_service),
):
    """Provider authorize URL carrying a fresh CSRF state."""
    url = await oauth.begin_authorization(tenant.tenant_id, provider)
    return AuthorizeResponse(authorize_url=url)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: Provider,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    oauth: Any = Depends(get_oauth_service),
):
    """Provider redirect target. Always redirects back to the settings page."""
    url = await oauth.complete_authorization(
        provider, code, state, error=error, error_description=error_description
    )
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.post("/{provider}/sync", response_model=SyncResponse)
async def trigger_sync(
    provider: Provider,
    tenant: TenantContext = Depends(require_admin),
    service: Any = Depends(get_integration_service),
):
    """Run one reconciliation cycle.

    Per-record failures come back in ``errors`` with status completed.
    A provider outage comes back with status failed. Expired credentials
    answer 409 with a re-authorization hint.
    """
    try:
        summary = await service.trigger_sync(tenant.tenant_id, provider)
    except IntegrationNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except SyncInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    body = _summary_to_response(summary)
    if summary.error_code == "credential_expired":
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": summary.error_message,
                "reauthorize_url": f"/api/v1/integrations/{provider.value}/authorize",
                "sync": body.model_dump(mode="json"),
            },
        )
    return body


@router.get("/{provider}/sync-runs", response_model=list[SyncRunRead])
async def list_sync_runs(
    provider: Provider,
    limit: int = Query(default=10, ge=1, le=50),
    tenant: TenantContext = Depends(get_tenant),
    service: Any = Depends(get_integration_service),
):
    return await service.list_sync_runs(tenant.tenant_id, provider, limit)


@router.delete("/{provider}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    provider: Provider,
    tenant: TenantContext = Depends(require_admin),
    oauth: Any = Depends(get_oauth_service),
):
    try:
        await oauth.disconnect(tenant.tenant_id, provider)
    except IntegrationNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
