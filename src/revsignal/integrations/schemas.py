"""Pydantic schemas for CRM integrations, sync runs and provider records.

Defines:
- Enums: Provider, IntegrationStatus, SyncType, SyncRunStatus
- Credential payloads: TokenSet
- Persisted views: IntegrationRead, SyncRunRead, SyncRecordError
- Intermediate provider records shared by every connector: ProviderOwner,
  ProviderAccount, ProviderContact, ProviderDeal
- SyncSummary: result of one reconciliation cycle
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class Provider(str, Enum):
    """Supported CRM providers. Stored on the Integration as the dispatch tag."""

    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"

    @property
    def display_name(self) -> str:
        return {"salesforce": "Salesforce", "hubspot": "HubSpot"}[self.value]


class IntegrationStatus(str, Enum):
    """Connection state of a tenant/provider integration."""

    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Credentials ─────────────────────────────────────────────────────────────


class TokenSet(BaseModel):
    """Plaintext tokens returned by a provider token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    instance_url: str | None = None


# ── Persisted Views ─────────────────────────────────────────────────────────


class IntegrationRead(BaseModel):
    """Integration record. Token fields hold ciphertext, never plaintext."""

    id: str
    tenant_id: str
    provider: Provider
    status: IntegrationStatus
    access_token: str = ""
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    last_sync_at: datetime | None = None
    sync_error: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    deleted_at: datetime | None = None


class SyncRecordError(BaseModel):
    """Structured per-record reconciliation error stored on a SyncRun."""

    entity: str
    external_id: str
    category: str
    message: str
    label: str | None = None

    def display(self) -> str:
        """Human-readable form, e.g. 'Deal Acme Renewal: No owner found'."""
        name = self.label or self.external_id
        return f"{self.entity.capitalize()} {name}: {self.message}"


class SyncRunRead(BaseModel):
    """Append-only audit record of one reconciliation cycle."""

    id: str
    integration_id: str
    sync_type: SyncType
    status: SyncRunStatus
    records_synced: int = 0
    errors: list[SyncRecordError] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ── Intermediate Provider Records ───────────────────────────────────────────


class ProviderOwner(BaseModel):
    """A CRM user who can own deals."""

    external_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class ProviderAccount(BaseModel):
    """Company/account in provider-neutral shape."""

    external_id: str
    name: str | None = None
    domain: str | None = None
    industry: str | None = None
    employee_count: int | None = None
    annual_revenue: float | None = None
    modified_at: datetime | None = None


class ProviderContact(BaseModel):
    """Contact in provider-neutral shape. email is the identity field."""

    external_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    phone: str | None = None
    account_external_id: str | None = None
    modified_at: datetime | None = None


class ProviderDeal(BaseModel):
    """Deal/opportunity in provider-neutral shape.

    stage holds the provider's stage id or label; providers that expose
    pipeline metadata are translated to labels by the engine. is_closed /
    is_won are set only by providers that report explicit closed flags.
    """

    external_id: str
    name: str | None = None
    description: str | None = None
    amount: float | None = None
    currency: str | None = None
    stage: str | None = None
    probability: float | None = None
    close_date: datetime | None = None
    owner_external_id: str | None = None
    account_external_id: str | None = None
    is_closed: bool | None = None
    is_won: bool | None = None
    modified_at: datetime | None = None


# ── Sync Result ─────────────────────────────────────────────────────────────


class SyncSummary(BaseModel):
    """Structured outcome of trigger_sync, returned for partial and total failure alike."""

    integration_id: str
    provider: Provider
    sync_run: SyncRunRead
    accounts: int = 0
    contacts: int = 0
    deals: int = 0
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.sync_run.status == SyncRunStatus.COMPLETED
