"""Reconciliation Engine -- drives one connector through one sync cycle.

Cycle order is fixed because later upserts resolve references written by
earlier ones:

    stage metadata -> owners -> accounts -> contacts -> deals

Every record upsert is its own transaction keyed by
(tenant_id, provider, external_id), so a cycle is at-least-once and
idempotent rather than all-or-nothing. Per-record failures are collected
as SyncRecordError entries and never abort the cycle; a connector-level
failure (ProviderAPIError, CredentialExpired) aborts the remaining fetches,
fails the SyncRun and puts the integration into ``error``.

The cursor for incremental cycles is the integration's last_sync_at, which
is written only when a cycle completes and holds that cycle's start time.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.revsignal.core.errors import (
    CredentialExpired,
    ProviderAPIError,
    RecordReconciliationError,
    SyncInProgress,
)
from src.revsignal.core.monitoring import (
    sync_duration_seconds,
    sync_record_errors_total,
    sync_records_total,
    sync_runs_total,
)
from src.revsignal.deals.repository import DealRepository
from src.revsignal.deals.schemas import (
    AccountUpsert,
    ContactUpsert,
    DealStatus,
    DealUpsert,
    derive_deal_status,
)
from src.revsignal.integrations.connectors.base import CRMConnector
from src.revsignal.integrations.repository import IntegrationRepository, OwnerDirectory
from src.revsignal.integrations.schemas import (
    IntegrationRead,
    IntegrationStatus,
    Provider,
    ProviderAccount,
    ProviderContact,
    ProviderDeal,
    SyncRecordError,
    SyncRunRead,
    SyncRunStatus,
    SyncSummary,
    SyncType,
)

logger = structlog.get_logger(__name__)

ConnectorFactory = Callable[[IntegrationRead], CRMConnector]

UNKNOWN_STAGE = "Unknown"
DEFAULT_CURRENCY = "USD"


class _CycleState:
    """Mutable bookkeeping for one cycle."""

    def __init__(self) -> None:
        self.accounts = 0
        self.contacts = 0
        self.deals = 0
        self.errors: list[SyncRecordError] = []

    @property
    def records(self) -> int:
        return self.accounts + self.contacts + self.deals


class ReconciliationEngine:
    """Map provider records onto local entities for one integration at a time.

    Args:
        integrations: Integration and SyncRun persistence.
        owners: Tenant user lookups for owner resolution.
        deals: Account/contact/deal upserts.
        connector_factory: Builds the provider connector for an integration.
        stale_sync_after: Age after which a leftover syncing status is taken over.
    """

    def __init__(
        self,
        integrations: IntegrationRepository,
        owners: OwnerDirectory,
        deals: DealRepository,
        connector_factory: ConnectorFactory,
        stale_sync_after: timedelta = timedelta(minutes=60),
    ) -> None:
        self._integrations = integrations
        self._owners = owners
        self._deals = deals
        self._connector_factory = connector_factory
        self._stale_sync_after = stale_sync_after

    async def run(self, integration: IntegrationRead) -> SyncSummary:
        """Execute one sync cycle and return its structured summary.

        Connector-level and internal failures are reported in the summary
        (status failed, error_code set) rather than raised.

        Raises:
            SyncInProgress: The integration is already syncing.
            Exception: The SyncRun could not be recorded; the integration is
                left in ``error``.
        """
        stale_before = datetime.now(timezone.utc) - self._stale_sync_after
        if not await self._integrations.mark_syncing(integration.id, stale_before):
            raise SyncInProgress(
                f"{integration.provider.display_name} sync already in progress"
            )

        since = integration.last_sync_at
        sync_type = SyncType.INCREMENTAL if since else SyncType.FULL
        try:
            sync_run = await self._integrations.create_sync_run(integration.id, sync_type)
        except Exception as exc:
            logger.exception(
                "sync.run_not_started",
                tenant_id=integration.tenant_id,
                integration_id=integration.id,
            )
            await self._integrations.set_status(
                integration.id, IntegrationStatus.ERROR, sync_error=str(exc)
            )
            raise
        cycle_started = sync_run.started_at or datetime.now(timezone.utc)
        state = _CycleState()
        provider = integration.provider
        log = logger.bind(
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            provider=provider.value,
            sync_run_id=sync_run.id,
        )
        log.info("sync.run_started", sync_type=sync_type.value)
        started = time.perf_counter()

        try:
            async with self._connector_factory(integration) as connector:
                await self._run_cycle(connector, integration, since, state)
        except Exception as exc:
            if isinstance(exc, CredentialExpired):
                error_code = "credential_expired"
                log.error("sync.run_failed", error_code=error_code, error=str(exc))
            elif isinstance(exc, ProviderAPIError):
                error_code = "provider_api_error"
                log.error("sync.run_failed", error_code=error_code, error=str(exc))
            else:
                error_code = "internal_error"
                log.exception("sync.run_crashed", error_code=error_code)
            finished = await self._fail(integration, sync_run.id, state, error_code, str(exc))
            sync_duration_seconds.labels(provider=provider.value).observe(
                time.perf_counter() - started
            )
            return SyncSummary(
                integration_id=integration.id,
                provider=provider,
                sync_run=finished,
                accounts=state.accounts,
                contacts=state.contacts,
                deals=state.deals,
                error_code=error_code,
                error_message=str(exc),
            )

        finished = await self._integrations.finish_sync_run(
            sync_run.id, SyncRunStatus.COMPLETED, state.records, state.errors
        )
        await self._integrations.set_status(
            integration.id,
            IntegrationStatus.CONNECTED,
            sync_error=None,
            last_sync_at=cycle_started,
        )
        sync_runs_total.labels(
            provider=provider.value, sync_type=sync_type.value, status="completed"
        ).inc()
        sync_duration_seconds.labels(provider=provider.value).observe(
            time.perf_counter() - started
        )
        log.info(
            "sync.run_completed",
            accounts=state.accounts,
            contacts=state.contacts,
            deals=state.deals,
            errors=len(state.errors),
        )
        return SyncSummary(
            integration_id=integration.id,
            provider=provider,
            sync_run=finished,
            accounts=state.accounts,
            contacts=state.contacts,
            deals=state.deals,
        )

    async def _fail(
        self,
        integration: IntegrationRead,
        sync_run_id: str,
        state: _CycleState,
        error_code: str,
        message: str,
    ) -> SyncRunRead:
        errors = [
            *state.errors,
            SyncRecordError(
                entity="integration",
                external_id=integration.id,
                category=error_code,
                message=message,
            ),
        ]
        finished = await self._integrations.finish_sync_run(
            sync_run_id, SyncRunStatus.FAILED, state.records, errors
        )
        await self._integrations.set_status(
            integration.id, IntegrationStatus.ERROR, sync_error=message
        )
        sync_runs_total.labels(
            provider=integration.provider.value,
            sync_type=finished.sync_type.value,
            status="failed",
        ).inc()
        return finished

    # ── Cycle Steps ─────────────────────────────────────────────────────────

    async def _run_cycle(
        self,
        connector: CRMConnector,
        integration: IntegrationRead,
        since: datetime | None,
        state: _CycleState,
    ) -> None:
        tenant_id = integration.tenant_id
        provider = integration.provider

        stage_labels = await connector.fetch_stage_metadata()
        owner_map = await self._resolve_owners(connector, tenant_id, provider, state)

        for account in await connector.fetch_accounts(since):
            await self._guard(
                state,
                provider,
                "account",
                account.external_id,
                account.name,
                self._reconcile_account(tenant_id, provider, account, state),
            )

        for contact in await connector.fetch_contacts(since):
            await self._guard(
                state,
                provider,
                "contact",
                contact.external_id,
                contact.email,
                self._reconcile_contact(tenant_id, provider, contact, state),
            )

        fallback = _AdminFallback(self._owners, tenant_id)
        for deal in await connector.fetch_deals(since):
            await self._guard(
                state,
                provider,
                "deal",
                deal.external_id,
                deal.name,
                self._reconcile_deal(
                    tenant_id, provider, deal, owner_map, fallback, stage_labels, state
                ),
            )

    async def _guard(
        self,
        state: _CycleState,
        provider: Provider,
        entity: str,
        external_id: str,
        label: str | None,
        step: Awaitable[None],
    ) -> None:
        """Await one record step, turning its failure into a SyncRecordError."""
        try:
            await step
        except RecordReconciliationError as exc:
            record_error = SyncRecordError(
                entity=exc.entity,
                external_id=exc.external_id,
                category=exc.category,
                message=exc.message,
                label=exc.label,
            )
            self._record_error(state, provider, record_error)
        except (CredentialExpired, ProviderAPIError):
            raise
        except Exception as exc:
            logger.exception(
                "sync.record_failed", provider=provider.value, entity=entity, external_id=external_id
            )
            self._record_error(
                state,
                provider,
                SyncRecordError(
                    entity=entity,
                    external_id=external_id,
                    category="persistence",
                    message=str(exc),
                    label=label,
                ),
            )

    @staticmethod
    def _record_error(state: _CycleState, provider: Provider, error: SyncRecordError) -> None:
        state.errors.append(error)
        sync_record_errors_total.labels(
            provider=provider.value, entity=error.entity, category=error.category
        ).inc()
        logger.warning(
            "sync.record_error",
            provider=provider.value,
            entity=error.entity,
            external_id=error.external_id,
            category=error.category,
            error=error.message,
        )

    async def _resolve_owners(
        self,
        connector: CRMConnector,
        tenant_id: str,
        provider: Provider,
        state: _CycleState,
    ) -> dict[str, str]:
        """Match provider users to tenant users by email and record the mapping.

        Returns every known provider-user -> internal-user mapping, including
        ones recorded by earlier cycles.
        """
        for owner in await connector.fetch_owners():
            if not owner.email:
                continue
            try:
                user_id = await self._owners.find_user_id_by_email(tenant_id, owner.email)
                if user_id:
                    await self._owners.record_mapping(
                        tenant_id, provider, owner.external_id, user_id
                    )
            except Exception as exc:
                logger.exception(
                    "sync.owner_mapping_failed",
                    provider=provider.value,
                    external_id=owner.external_id,
                )
                self._record_error(
                    state,
                    provider,
                    SyncRecordError(
                        entity="owner",
                        external_id=owner.external_id,
                        category="persistence",
                        message=str(exc),
                        label=owner.email,
                    ),
                )
        return await self._owners.get_mappings(tenant_id, provider)

    async def _reconcile_account(
        self, tenant_id: str, provider: Provider, record: ProviderAccount, state: _CycleState
    ) -> None:
        if not record.name:
            return
        await self._deals.upsert_account(
            tenant_id,
            provider.value,
            AccountUpsert(
                external_id=record.external_id,
                name=record.name,
                domain=record.domain,
                industry=record.industry,
                employee_count=record.employee_count,
                annual_revenue=record.annual_revenue,
            ),
        )
        state.accounts += 1
        sync_records_total.labels(provider=provider.value, entity="account").inc()

    async def _reconcile_contact(
        self, tenant_id: str, provider: Provider, record: ProviderContact, state: _CycleState
    ) -> None:
        if not record.email:
            return
        account_id = None
        if record.account_external_id:
            account_id = await self._deals.find_account_id(
                tenant_id, provider.value, record.account_external_id
            )
        await self._deals.upsert_contact(
            tenant_id,
            provider.value,
            ContactUpsert(
                external_id=record.external_id,
                email=record.email.strip().lower(),
                first_name=record.first_name or "Unknown",
                last_name=record.last_name or "Unknown",
                title=record.title,
                phone=record.phone,
                account_id=account_id,
            ),
        )
        state.contacts += 1
        sync_records_total.labels(provider=provider.value, entity="contact").inc()

    async def _reconcile_deal(
        self,
        tenant_id: str,
        provider: Provider,
        record: ProviderDeal,
        owner_map: dict[str, str],
        fallback: _AdminFallback,
        stage_labels: dict[str, str] | None,
        state: _CycleState,
    ) -> None:
        if not record.name:
            return

        owner_id = owner_map.get(record.owner_external_id) if record.owner_external_id else None
        if owner_id is None:
            owner_id = await fallback.get()
        if owner_id is None:
            raise RecordReconciliationError(
                entity="deal",
                external_id=record.external_id,
                category="missing_owner",
                message="No owner found",
                label=record.name,
            )

        stage = record.stage or UNKNOWN_STAGE
        if stage_labels and record.stage:
            stage = stage_labels.get(record.stage, record.stage)

        status = derive_deal_status(stage, record.is_closed, record.is_won)
        closed = status in (DealStatus.WON, DealStatus.LOST)

        account_id = None
        if record.account_external_id:
            account_id = await self._deals.find_account_id(
                tenant_id, provider.value, record.account_external_id
            )

        await self._deals.upsert_deal(
            tenant_id,
            provider.value,
            DealUpsert(
                external_id=record.external_id,
                name=record.name,
                owner_id=owner_id,
                description=record.description,
                amount=record.amount,
                currency=(record.currency or DEFAULT_CURRENCY).upper()[:3],
                stage=stage,
                status=status,
                probability=record.probability,
                expected_close_date=record.close_date,
                actual_close_date=record.close_date if closed else None,
                account_id=account_id,
            ),
        )
        state.deals += 1
        sync_records_total.labels(provider=provider.value, entity="deal").inc()


class _AdminFallback:
    """Lazily looks up the tenant's first administrator once per cycle."""

    def __init__(self, owners: OwnerDirectory, tenant_id: str) -> None:
        self._owners = owners
        self._tenant_id = tenant_id
        self._loaded = False
        self._admin_id: str | None = None

    async def get(self) -> str | None:
        if not self._loaded:
            self._admin_id = await self._owners.find_first_admin(self._tenant_id)
            self._loaded = True
        return self._admin_id
