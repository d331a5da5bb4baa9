"""Shared fixtures and in-memory repository doubles for pipeline tests.

Provides:
- InMemoryIntegrationRepository, InMemoryOwnerDirectory, InMemoryDealRepository:
  test doubles with the same method names as the SQLAlchemy repositories,
  enforcing the (tenant, provider, external_id) natural key
- Fernet cipher and settings fixtures
- make_token(): bearer JWTs for API tests
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from src.revsignal.config import Settings
from src.revsignal.core.encryption import TokenCipher, generate_key
from src.revsignal.core.errors import DealNotFound
from src.revsignal.deals.schemas import (
    AccountUpsert,
    ContactUpsert,
    DealRead,
    DealScoreEnvelope,
    DealScoreSnapshotRead,
    DealStatus,
    DealUpsert,
)
from src.revsignal.integrations.schemas import (
    IntegrationRead,
    IntegrationStatus,
    Provider,
    SyncRecordError,
    SyncRunRead,
    SyncRunStatus,
    SyncType,
)
from src.revsignal.scoring.schemas import AIScoreResponse, DealDataForScoring

TENANT_ID = "11111111-1111-1111-1111-111111111111"
OTHER_TENANT_ID = "22222222-2222-2222-2222-222222222222"
JWT_SECRET = "test-secret"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── Integration Doubles ──────────────────────────────────────────────────────


class InMemoryIntegrationRepository:
    """In-memory IntegrationRepository for testing without database."""

    def __init__(self) -> None:
        self.integrations: dict[str, IntegrationRead] = {}
        self.sync_runs: dict[str, SyncRunRead] = {}
        self.syncing_since: dict[str, datetime] = {}
        self._clock = BASE_TIME

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add(self, **fields) -> IntegrationRead:
        integration = IntegrationRead(
            id=fields.pop("id", str(uuid.uuid4())),
            tenant_id=fields.pop("tenant_id", TENANT_ID),
            provider=fields.pop("provider", Provider.HUBSPOT),
            status=fields.pop("status", IntegrationStatus.CONNECTED),
            **fields,
        )
        self.integrations[integration.id] = integration
        return integration

    def _update(self, integration_id: str, **changes) -> IntegrationRead:
        updated = self.integrations[integration_id].model_copy(update=changes)
        self.integrations[integration_id] = updated
        return updated

    async def get_integration(self, tenant_id: str, provider: Provider) -> IntegrationRead | None:
        for i in self.integrations.values():
            if i.tenant_id == tenant_id and i.provider == provider and i.deleted_at is None:
                return i
        return None

    async def get_by_id(self, integration_id: str) -> IntegrationRead | None:
        return self.integrations.get(integration_id)

    async def list_integrations(self, tenant_id: str) -> list[IntegrationRead]:
        return [
            i for i in self.integrations.values()
            if i.tenant_id == tenant_id and i.deleted_at is None
        ]

    async def upsert_connected(
        self,
        tenant_id: str,
        provider: Provider,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        settings: dict,
    ) -> IntegrationRead:
        for i in self.integrations.values():
            if i.tenant_id == tenant_id and i.provider == provider:
                return self._update(
                    i.id,
                    status=IntegrationStatus.CONNECTED,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                    settings=settings,
                    sync_error=None,
                    deleted_at=None,
                )
        return self.add(
            tenant_id=tenant_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            settings=settings,
        )

    async def update_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        self._update(
            integration_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
        )

    async def set_status(
        self,
        integration_id: str,
        status: IntegrationStatus,
        *,
        sync_error: str | None = None,
        last_sync_at: datetime | None = None,
    ) -> None:
        changes: dict = {"status": status, "sync_error": sync_error}
        if last_sync_at is not None:
            changes["last_sync_at"] = last_sync_at
        self._update(integration_id, **changes)

    async def mark_syncing(self, integration_id: str, stale_before: datetime) -> bool:
        if self.integrations[integration_id].status == IntegrationStatus.SYNCING:
            since = self.syncing_since.get(integration_id)
            if since is None or since >= stale_before:
                return False
        self._update(integration_id, status=IntegrationStatus.SYNCING)
        self.syncing_since[integration_id] = datetime.now(timezone.utc)
        return True

    async def disconnect(self, tenant_id: str, provider: Provider) -> bool:
        integration = await self.get_integration(tenant_id, provider)
        if integration is None:
            return False
        self._update(
            integration.id,
            status=IntegrationStatus.DISCONNECTED,
            access_token="",
            refresh_token=None,
            deleted_at=self.tick(),
        )
        return True

    async def create_sync_run(self, integration_id: str, sync_type: SyncType) -> SyncRunRead:
        run = SyncRunRead(
            id=str(uuid.uuid4()),
            integration_id=integration_id,
            sync_type=sync_type,
            status=SyncRunStatus.RUNNING,
            started_at=self.tick(),
        )
        self.sync_runs[run.id] = run
        return run

    async def finish_sync_run(
        self,
        sync_run_id: str,
        status: SyncRunStatus,
        records_synced: int,
        errors: list[SyncRecordError],
    ) -> SyncRunRead:
        run = self.sync_runs[sync_run_id].model_copy(
            update={
                "status": status,
                "records_synced": records_synced,
                "errors": list(errors),
                "completed_at": self.tick(),
            }
        )
        self.sync_runs[sync_run_id] = run
        return run

    async def list_sync_runs(self, integration_id: str, limit: int = 10) -> list[SyncRunRead]:
        runs = [r for r in self.sync_runs.values() if r.integration_id == integration_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs[:limit]


class InMemoryOwnerDirectory:
    """In-memory OwnerDirectory: tenant users plus recorded CRM mappings."""

    def __init__(self) -> None:
        self.users: list[dict] = []
        self.mappings: dict[tuple[str, str, str], str] = {}

    def add_user(self, email: str, role: str = "rep", tenant_id: str = TENANT_ID) -> str:
        user_id = str(uuid.uuid4())
        self.users.append(
            {"id": user_id, "tenant_id": tenant_id, "email": email, "role": role, "active": True}
        )
        return user_id

    async def find_user_id_by_email(self, tenant_id: str, email: str) -> str | None:
        for u in self.users:
            if u["tenant_id"] == tenant_id and u["active"] and u["email"].lower() == email.lower():
                return u["id"]
        return None

    async def record_mapping(
        self, tenant_id: str, provider: Provider, external_user_id: str, user_id: str
    ) -> None:
        self.mappings[(tenant_id, provider.value, external_user_id)] = user_id

    async def get_mappings(self, tenant_id: str, provider: Provider) -> dict[str, str]:
        return {
            ext: user_id
            for (t, p, ext), user_id in self.mappings.items()
            if t == tenant_id and p == provider.value
        }

    async def find_first_admin(self, tenant_id: str) -> str | None:
        for u in self.users:
            if u["tenant_id"] == tenant_id and u["role"] == "admin" and u["active"]:
                return u["id"]
        return None


# ── Deal Double ──────────────────────────────────────────────────────────────


class InMemoryDealRepository:
    """In-memory DealRepository keyed by (tenant, provider, external_id)."""

    def __init__(self) -> None:
        self.accounts: dict[tuple[str, str, str], dict] = {}
        self.contacts: dict[tuple[str, str, str], dict] = {}
        self.deals: dict[str, DealRead] = {}
        self.snapshots: list[DealScoreSnapshotRead] = []
        self.scoring_inputs: dict[str, DealDataForScoring] = {}
        self._clock = BASE_TIME

    def tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    # Reconciliation

    async def upsert_account(self, tenant_id: str, provider: str, data: AccountUpsert) -> str:
        key = (tenant_id, provider, data.external_id)
        existing = self.accounts.get(key)
        account_id = existing["id"] if existing else str(uuid.uuid4())
        self.accounts[key] = {"id": account_id, **data.model_dump(), "synced_at": self.tick()}
        return account_id

    async def find_account_id(self, tenant_id: str, provider: str, external_id: str) -> str | None:
        account = self.accounts.get((tenant_id, provider, external_id))
        return account["id"] if account else None

    async def upsert_contact(self, tenant_id: str, provider: str, data: ContactUpsert) -> str:
        key = (tenant_id, provider, data.external_id)
        existing = self.contacts.get(key)
        contact_id = existing["id"] if existing else str(uuid.uuid4())
        self.contacts[key] = {"id": contact_id, **data.model_dump(), "synced_at": self.tick()}
        return contact_id

    async def upsert_deal(self, tenant_id: str, provider: str, data: DealUpsert) -> str:
        now = self.tick()
        existing = self.find_deal(tenant_id, provider, data.external_id)
        if existing is None:
            deal = DealRead(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                provider=provider,
                stage_entered_at=now,
                synced_at=now,
                **data.model_dump(),
            )
        else:
            stage_entered_at = (
                existing.stage_entered_at if existing.stage == data.stage else now
            )
            deal = existing.model_copy(
                update={**data.model_dump(), "stage_entered_at": stage_entered_at, "synced_at": now}
            )
        self.deals[deal.id] = deal
        return deal.id

    def find_deal(self, tenant_id: str, provider: str, external_id: str) -> DealRead | None:
        for deal in self.deals.values():
            if (deal.tenant_id, deal.provider, deal.external_id) == (tenant_id, provider, external_id):
                return deal
        return None

    # Scoring

    def add_deal(self, name: str, tenant_id: str = TENANT_ID, **fields) -> DealRead:
        deal = DealRead(
            id=fields.pop("id", str(uuid.uuid4())),
            tenant_id=tenant_id,
            provider=fields.pop("provider", "hubspot"),
            external_id=fields.pop("external_id", str(uuid.uuid4())),
            name=name,
            owner_id=fields.pop("owner_id", str(uuid.uuid4())),
            stage=fields.pop("stage", "Discovery"),
            status=fields.pop("status", DealStatus.OPEN),
            **fields,
        )
        self.deals[deal.id] = deal
        return deal

    def _live(self, tenant_id: str, deal_id: str) -> DealRead | None:
        deal = self.deals.get(deal_id)
        if deal and deal.tenant_id == tenant_id and deal.deleted_at is None:
            return deal
        return None

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        return self._live(tenant_id, deal_id)

    async def list_scoring_candidates(
        self,
        tenant_id: str,
        stale_before: datetime,
        limit: int,
        only_unscored: bool = False,
    ) -> list[str]:
        candidates = [
            d for d in self.deals.values()
            if d.tenant_id == tenant_id and d.status == DealStatus.OPEN and d.deleted_at is None
        ]
        if only_unscored:
            candidates = [d for d in candidates if d.health_score is None]
        else:
            candidates = [
                d for d in candidates
                if d.health_score is None or d.scored_at is None or d.scored_at < stale_before
            ]
        candidates.sort(
            key=lambda d: (
                d.health_score is not None,
                d.scored_at is not None,
                d.scored_at or BASE_TIME,
                d.id,
            )
        )
        return [d.id for d in candidates[:limit]]

    async def get_scoring_input(self, tenant_id: str, deal_id: str) -> DealDataForScoring | None:
        deal = self._live(tenant_id, deal_id)
        if deal is None:
            return None
        if deal_id in self.scoring_inputs:
            return self.scoring_inputs[deal_id]
        return DealDataForScoring(
            id=deal.id,
            name=deal.name,
            amount=deal.amount,
            stage=deal.stage,
            days_in_stage=deal.days_in_stage,
            expected_close_date=deal.expected_close_date,
            status=deal.status.value,
            last_activity_at=deal.last_activity_at,
        )

    async def apply_score(
        self,
        tenant_id: str,
        deal_id: str,
        response: AIScoreResponse,
        model_version: str,
        scored_at: datetime,
    ) -> DealScoreSnapshotRead:
        deal = self._live(tenant_id, deal_id)
        if deal is None:
            raise DealNotFound(f"Deal {deal_id} not found")
        self.deals[deal_id] = deal.model_copy(
            update={
                "health_score": response.score,
                "win_probability": response.win_probability,
                "risk_level": response.risk_level,
                "score_factors": response.factors.model_dump(),
                "risk_factors": list(response.risk_factors),
                "scored_at": scored_at,
            }
        )
        snapshot = DealScoreSnapshotRead(
            id=str(uuid.uuid4()),
            deal_id=deal_id,
            score=response.score,
            win_probability=response.win_probability,
            factors=response.snapshot_factors(),
            model_version=model_version,
            calculated_at=scored_at,
        )
        self.snapshots.append(snapshot)
        return snapshot

    async def list_score_history(
        self, tenant_id: str, deal_id: str, limit: int = 10
    ) -> list[DealScoreSnapshotRead]:
        if self._live(tenant_id, deal_id) is None:
            return []
        history = [s for s in self.snapshots if s.deal_id == deal_id]
        history.sort(key=lambda s: s.calculated_at, reverse=True)
        return history[:limit]

    async def list_open_score_envelopes(self, tenant_id: str) -> list[DealScoreEnvelope]:
        return [
            DealScoreEnvelope(
                deal_id=d.id,
                health_score=d.health_score,
                risk_level=d.risk_level,
                scored_at=d.scored_at,
            )
            for d in self.deals.values()
            if d.tenant_id == tenant_id and d.status == DealStatus.OPEN and d.deleted_at is None
        ]

    async def list_open_stage_entries(self, tenant_id: str) -> list[tuple[str, datetime]]:
        return [
            (d.id, d.stage_entered_at)
            for d in self.deals.values()
            if d.tenant_id == tenant_id
            and d.status == DealStatus.OPEN
            and d.deleted_at is None
            and d.stage_entered_at is not None
        ]

    async def set_days_in_stage(self, tenant_id: str, days_by_deal: dict[str, int]) -> int:
        for deal_id, days in days_by_deal.items():
            self.deals[deal_id] = self.deals[deal_id].model_copy(update={"days_in_stage": days})
        return len(days_by_deal)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def fernet_key() -> str:
    return generate_key()


@pytest.fixture
def cipher(fernet_key) -> TokenCipher:
    return TokenCipher(fernet_key)


@pytest.fixture
def settings(fernet_key) -> Settings:
    return Settings(
        _env_file=None,
        APP_BASE_URL="https://app.example.com",
        CREDENTIAL_ENCRYPTION_KEY=fernet_key,
        JWT_SECRET_KEY=JWT_SECRET,
        SALESFORCE_CLIENT_ID="sf-client",
        SALESFORCE_CLIENT_SECRET="sf-secret",
        HUBSPOT_CLIENT_ID="hs-client",
        HUBSPOT_CLIENT_SECRET="hs-secret",
        PROVIDER_MAX_RETRIES=3,
    )


@pytest.fixture
def integration_repo() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture
def owner_directory() -> InMemoryOwnerDirectory:
    return InMemoryOwnerDirectory()


@pytest.fixture
def deal_repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


def make_token(
    tenant_id: str = TENANT_ID,
    role: str = "admin",
    user_id: str | None = None,
    secret: str = JWT_SECRET,
) -> str:
    """Bearer JWT as issued by the auth layer."""
    payload = {
        "sub": user_id or str(uuid.uuid4()),
        "tenant_id": tenant_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")
