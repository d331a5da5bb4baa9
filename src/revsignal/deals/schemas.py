"""Pydantic schemas for reconciled CRM entities and the deal scoring envelope.

Defines:
- Enums: DealStatus, RiskLevel
- Upsert payloads written by the Reconciliation Engine: AccountUpsert,
  ContactUpsert, DealUpsert
- Read views: DealRead, DealScoreSnapshotRead, DealScoreEnvelope
- derive_deal_status(): lifecycle status from provider stage semantics
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStatus(str, Enum):
    """Lifecycle status. Only open deals are scoring candidates."""

    OPEN = "open"
    WON = "won"
    LOST = "lost"
    STALLED = "stalled"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


_WON_MARKERS = ("closedwon", "closed won")
_LOST_MARKERS = ("closedlost", "closed lost")


def derive_deal_status(
    stage_label: str | None,
    is_closed: bool | None = None,
    is_won: bool | None = None,
) -> DealStatus:
    """Map provider stage semantics onto a lifecycle status.

    An explicit closed flag wins when the provider supplies one. Otherwise the
    stage label is matched case-insensitively against the canonical
    closed-won / closed-lost patterns.
    """
    if is_closed is not None:
        if is_closed:
            return DealStatus.WON if is_won else DealStatus.LOST
        return DealStatus.OPEN

    label = (stage_label or "").lower()
    if any(marker in label for marker in _WON_MARKERS):
        return DealStatus.WON
    if any(marker in label for marker in _LOST_MARKERS):
        return DealStatus.LOST
    return DealStatus.OPEN


# ── Upsert Payloads ─────────────────────────────────────────────────────────


class AccountUpsert(BaseModel):
    external_id: str
    name: str
    domain: str | None = None
    industry: str | None = None
    employee_count: int | None = None
    annual_revenue: float | None = None


class ContactUpsert(BaseModel):
    external_id: str
    email: str
    first_name: str = "Unknown"
    last_name: str = "Unknown"
    title: str | None = None
    phone: str | None = None
    account_id: str | None = None


class DealUpsert(BaseModel):
    """Deal fields owned by the provider. The scoring envelope is never touched by sync."""

    external_id: str
    name: str
    owner_id: str
    description: str | None = None
    amount: float | None = None
    currency: str = "USD"
    stage: str
    status: DealStatus = DealStatus.OPEN
    probability: float | None = None
    expected_close_date: datetime | None = None
    actual_close_date: datetime | None = None
    account_id: str | None = None


# ── Read Views ──────────────────────────────────────────────────────────────


class DealRead(BaseModel):
    """Deal with its live scoring envelope."""

    id: str
    tenant_id: str
    provider: str
    external_id: str
    name: str
    owner_id: str
    account_id: str | None = None
    description: str | None = None
    amount: float | None = None
    currency: str = "USD"
    stage: str
    status: DealStatus
    probability: float | None = None
    expected_close_date: datetime | None = None
    actual_close_date: datetime | None = None
    stage_entered_at: datetime | None = None
    days_in_stage: int | None = None
    last_activity_at: datetime | None = None
    health_score: float | None = None
    win_probability: float | None = None
    risk_level: RiskLevel | None = None
    score_factors: dict[str, Any] | None = None
    risk_factors: list[str] = Field(default_factory=list)
    scored_at: datetime | None = None
    synced_at: datetime | None = None
    deleted_at: datetime | None = None


class DealScoreEnvelope(BaseModel):
    """Minimal scoring projection of an open deal, used for aggregate stats."""

    deal_id: str
    health_score: float | None = None
    risk_level: RiskLevel | None = None
    scored_at: datetime | None = None


class DealScoreSnapshotRead(BaseModel):
    """One historical scoring event."""

    id: str
    deal_id: str
    score: float
    win_probability: float | None = None
    factors: dict[str, Any] = Field(default_factory=dict)
    model_version: str
    calculated_at: datetime
