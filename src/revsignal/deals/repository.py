"""Deal pipeline repository -- async upserts and scoring reads/writes.

Provides DealRepository with the session_factory callable pattern. All
methods take tenant_id as first argument; every query is scoped by it.

Reconciliation writes go through PostgreSQL INSERT ... ON CONFLICT on the
(tenant_id, provider, external_id) natural key, one transaction per record.
Scoring writes (live envelope + history snapshot) share one transaction.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.revsignal.core.errors import DealNotFound
from src.revsignal.deals.models import (
    AccountModel,
    ActivityModel,
    ContactModel,
    DealContactModel,
    DealModel,
    DealScoreSnapshotModel,
    DealSignalModel,
)
from src.revsignal.deals.schemas import (
    AccountUpsert,
    ContactUpsert,
    DealRead,
    DealScoreEnvelope,
    DealScoreSnapshotRead,
    DealStatus,
    DealUpsert,
)
from src.revsignal.scoring.schemas import (
    AIScoreResponse,
    DealContactRole,
    DealDataForScoring,
    DealSignalInput,
    RecentActivity,
)

logger = structlog.get_logger(__name__)

RECENT_ACTIVITY_LIMIT = 20
RECENT_SIGNAL_LIMIT = 30

_NATURAL_KEY = ["tenant_id", "provider", "external_id"]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_deal(model: DealModel) -> DealRead:
    return DealRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=model.provider,
        external_id=model.external_id,
        name=model.name,
        owner_id=str(model.owner_id),
        account_id=str(model.account_id) if model.account_id else None,
        description=model.description,
        amount=model.amount,
        currency=model.currency,
        stage=model.stage,
        status=DealStatus(model.status),
        probability=model.probability,
        expected_close_date=model.expected_close_date,
        actual_close_date=model.actual_close_date,
        stage_entered_at=model.stage_entered_at,
        days_in_stage=model.days_in_stage,
        last_activity_at=model.last_activity_at,
        health_score=model.health_score,
        win_probability=model.win_probability,
        risk_level=model.risk_level,
        score_factors=model.score_factors,
        risk_factors=model.risk_factors or [],
        scored_at=model.scored_at,
        synced_at=model.synced_at,
        deleted_at=model.deleted_at,
    )


def _model_to_snapshot(model: DealScoreSnapshotModel) -> DealScoreSnapshotRead:
    return DealScoreSnapshotRead(
        id=str(model.id),
        deal_id=str(model.deal_id),
        score=model.score,
        win_probability=model.win_probability,
        factors=model.factors or {},
        model_version=model.model_version,
        calculated_at=model.calculated_at,
    )


def _open_deals(tenant_id: str):
    """Common WHERE clause: open, non-deleted deals of one tenant."""
    return (
        DealModel.tenant_id == uuid.UUID(tenant_id),
        DealModel.status == DealStatus.OPEN.value,
        DealModel.deleted_at.is_(None),
    )


# ── Repository ──────────────────────────────────────────────────────────────


class DealRepository:
    """Async persistence for accounts, contacts, deals and score history.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Reconciliation Upserts ──────────────────────────────────────────────

    async def upsert_account(
        self, tenant_id: str, provider: str, data: AccountUpsert
    ) -> str:
        """Create or overwrite an account by its natural key. Returns the local id."""
        now = datetime.now(timezone.utc)
        values = {
            "tenant_id": uuid.UUID(tenant_id),
            "provider": provider,
            "external_id": data.external_id,
            "name": data.name,
            "domain": data.domain,
            "industry": data.industry,
            "employee_count": data.employee_count,
            "annual_revenue": data.annual_revenue,
            "synced_at": now,
        }
        stmt = pg_insert(AccountModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=_NATURAL_KEY,
            set_={
                "name": stmt.excluded.name,
                "domain": stmt.excluded.domain,
                "industry": stmt.excluded.industry,
                "employee_count": stmt.excluded.employee_count,
                "annual_revenue": stmt.excluded.annual_revenue,
                "synced_at": stmt.excluded.synced_at,
                "updated_at": now,
            },
        ).returning(AccountModel.id)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            account_id = result.scalar_one()
            await session.commit()
            return str(account_id)

    async def find_account_id(
        self, tenant_id: str, provider: str, external_id: str
    ) -> str | None:
        """Resolve a provider company id to the local account id."""
        async for session in self._session_factory():
            stmt = select(AccountModel.id).where(
                AccountModel.tenant_id == uuid.UUID(tenant_id),
                AccountModel.provider == provider,
                AccountModel.external_id == external_id,
            )
            result = await session.execute(stmt)
            account_id = result.scalar_one_or_none()
            return str(account_id) if account_id else None

    async def upsert_contact(
        self, tenant_id: str, provider: str, data: ContactUpsert
    ) -> str:
        """Create or overwrite a contact by its natural key. Returns the local id."""
        now = datetime.now(timezone.utc)
        values = {
            "tenant_id": uuid.UUID(tenant_id),
            "provider": provider,
            "external_id": data.external_id,
            "account_id": uuid.UUID(data.account_id) if data.account_id else None,
            "email": data.email,
            "first_name": data.first_name,
            "last_name": data.last_name,
            "title": data.title,
            "phone": data.phone,
            "synced_at": now,
        }
        stmt = pg_insert(ContactModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=_NATURAL_KEY,
            set_={
                "account_id": stmt.excluded.account_id,
                "email": stmt.excluded.email,
                "first_name": stmt.excluded.first_name,
                "last_name": stmt.excluded.last_name,
                "title": stmt.excluded.title,
                "phone": stmt.excluded.phone,
                "synced_at": stmt.excluded.synced_at,
                "updated_at": now,
            },
        ).returning(ContactModel.id)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            contact_id = result.scalar_one()
            await session.commit()
            return str(contact_id)

    async def upsert_deal(
        self, tenant_id: str, provider: str, data: DealUpsert
    ) -> str:
        """Create or overwrite a deal by its natural key. Returns the local id.

        stage_entered_at is stamped on insert and reset only when the stored
        stage label differs from the incoming one. The scoring envelope is
        left untouched.
        """
        now = datetime.now(timezone.utc)
        values = {
            "tenant_id": uuid.UUID(tenant_id),
            "provider": provider,
            "external_id": data.external_id,
            "account_id": uuid.UUID(data.account_id) if data.account_id else None,
            "owner_id": uuid.UUID(data.owner_id),
            "name": data.name,
            "description": data.description,
            "amount": data.amount,
            "currency": data.currency,
            "stage": data.stage,
            "status": data.status.value,
            "probability": data.probability,
            "expected_close_date": data.expected_close_date,
            "actual_close_date": data.actual_close_date,
            "stage_entered_at": now,
            "synced_at": now,
        }
        stmt = pg_insert(DealModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=_NATURAL_KEY,
            set_={
                "account_id": stmt.excluded.account_id,
                "owner_id": stmt.excluded.owner_id,
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "amount": stmt.excluded.amount,
                "currency": stmt.excluded.currency,
                "stage": stmt.excluded.stage,
                "status": stmt.excluded.status,
                "probability": stmt.excluded.probability,
                "expected_close_date": stmt.excluded.expected_close_date,
                "actual_close_date": stmt.excluded.actual_close_date,
                "stage_entered_at": case(
                    (
                        DealModel.stage != stmt.excluded.stage,
                        stmt.excluded.stage_entered_at,
                    ),
                    else_=DealModel.stage_entered_at,
                ),
                "synced_at": stmt.excluded.synced_at,
                "updated_at": now,
            },
        ).returning(DealModel.id)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            deal_id = result.scalar_one()
            await session.commit()
            return str(deal_id)

    # ── Deal Reads ──────────────────────────────────────────────────────────

    async def get_deal(self, tenant_id: str, deal_id: str) -> DealRead | None:
        """Get a non-deleted deal by id."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.tenant_id == uuid.UUID(tenant_id),
                DealModel.id == uuid.UUID(deal_id),
                DealModel.deleted_at.is_(None),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)

    # ── Scoring ─────────────────────────────────────────────────────────────

    async def list_scoring_candidates(
        self,
        tenant_id: str,
        stale_before: datetime,
        limit: int,
        only_unscored: bool = False,
    ) -> list[str]:
        """Open deals needing a (re)score, never-scored first then oldest-scored."""
        async for session in self._session_factory():
            stmt = select(DealModel.id).where(*_open_deals(tenant_id))
            if only_unscored:
                stmt = stmt.where(DealModel.health_score.is_(None))
            else:
                stmt = stmt.where(
                    or_(
                        DealModel.health_score.is_(None),
                        DealModel.scored_at.is_(None),
                        DealModel.scored_at < stale_before,
                    )
                )
            stmt = stmt.order_by(
                case((DealModel.health_score.is_(None), 0), else_=1),
                DealModel.scored_at.asc().nulls_first(),
                DealModel.id,
            ).limit(limit)
            result = await session.execute(stmt)
            return [str(deal_id) for deal_id in result.scalars().all()]

    async def get_scoring_input(
        self, tenant_id: str, deal_id: str
    ) -> DealDataForScoring | None:
        """Assemble the Deal Health Model input for one deal."""
        async for session in self._session_factory():
            deal_uuid = uuid.UUID(deal_id)
            deal_stmt = select(DealModel).where(
                DealModel.tenant_id == uuid.UUID(tenant_id),
                DealModel.id == deal_uuid,
                DealModel.deleted_at.is_(None),
            )
            deal = (await session.execute(deal_stmt)).scalar_one_or_none()
            if deal is None:
                return None

            contact_count = (
                await session.execute(
                    select(func.count())
                    .select_from(DealContactModel)
                    .where(DealContactModel.deal_id == deal_uuid)
                )
            ).scalar_one()
            activity_count = (
                await session.execute(
                    select(func.count())
                    .select_from(ActivityModel)
                    .where(ActivityModel.deal_id == deal_uuid)
                )
            ).scalar_one()

            activities = (
                await session.execute(
                    select(ActivityModel)
                    .where(ActivityModel.deal_id == deal_uuid)
                    .order_by(ActivityModel.created_at.desc())
                    .limit(RECENT_ACTIVITY_LIMIT)
                )
            ).scalars().all()

            contact_rows = (
                await session.execute(
                    select(
                        DealContactModel.role,
                        DealContactModel.is_primary,
                        ContactModel.role,
                    )
                    .join(ContactModel, ContactModel.id == DealContactModel.contact_id)
                    .where(DealContactModel.deal_id == deal_uuid)
                )
            ).all()

            signals = (
                await session.execute(
                    select(DealSignalModel)
                    .where(DealSignalModel.deal_id == deal_uuid)
                    .order_by(DealSignalModel.occurred_at.desc())
                    .limit(RECENT_SIGNAL_LIMIT)
                )
            ).scalars().all()

            return DealDataForScoring(
                id=str(deal.id),
                name=deal.name,
                amount=deal.amount,
                stage=deal.stage,
                days_in_stage=deal.days_in_stage,
                expected_close_date=deal.expected_close_date,
                status=deal.status,
                last_activity_at=deal.last_activity_at,
                contact_count=contact_count,
                activity_count=activity_count,
                recent_activities=[
                    RecentActivity(type=a.type, created_at=a.created_at, subject=a.subject)
                    for a in activities
                ],
                contacts=[
                    DealContactRole(role=deal_role or contact_role, is_primary=is_primary)
                    for deal_role, is_primary, contact_role in contact_rows
                ],
                signals=[
                    DealSignalInput(
                        type=s.type,
                        sentiment_label=s.sentiment_label,
                        occurred_at=s.occurred_at,
                    )
                    for s in signals
                ],
            )

    async def apply_score(
        self,
        tenant_id: str,
        deal_id: str,
        response: AIScoreResponse,
        model_version: str,
        scored_at: datetime,
    ) -> DealScoreSnapshotRead:
        """Write the live envelope and append a history row in one transaction.

        Raises:
            DealNotFound: If the deal vanished (or was deleted) before the
                write; nothing is committed.
        """
        async for session in self._session_factory():
            deal_uuid = uuid.UUID(deal_id)
            result = await session.execute(
                update(DealModel)
                .where(
                    DealModel.tenant_id == uuid.UUID(tenant_id),
                    DealModel.id == deal_uuid,
                    DealModel.deleted_at.is_(None),
                )
                .values(
                    health_score=response.score,
                    win_probability=response.win_probability,
                    risk_level=response.risk_level.value,
                    score_factors=response.factors.model_dump(),
                    risk_factors=list(response.risk_factors),
                    scored_at=scored_at,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise DealNotFound(f"Deal {deal_id} not found")

            snapshot = DealScoreSnapshotModel(
                tenant_id=uuid.UUID(tenant_id),
                deal_id=deal_uuid,
                score=response.score,
                win_probability=response.win_probability,
                factors=response.snapshot_factors(),
                model_version=model_version,
                calculated_at=scored_at,
            )
            session.add(snapshot)
            await session.commit()
            await session.refresh(snapshot)
            return _model_to_snapshot(snapshot)

    async def list_score_history(
        self, tenant_id: str, deal_id: str, limit: int = 10
    ) -> list[DealScoreSnapshotRead]:
        """Snapshots for a deal, most recent first."""
        async for session in self._session_factory():
            stmt = (
                select(DealScoreSnapshotModel)
                .where(
                    DealScoreSnapshotModel.tenant_id == uuid.UUID(tenant_id),
                    DealScoreSnapshotModel.deal_id == uuid.UUID(deal_id),
                )
                .order_by(DealScoreSnapshotModel.calculated_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_snapshot(m) for m in result.scalars().all()]

    async def list_open_score_envelopes(self, tenant_id: str) -> list[DealScoreEnvelope]:
        """Scoring projection of every open deal, for aggregate stats."""
        async for session in self._session_factory():
            stmt = select(
                DealModel.id,
                DealModel.health_score,
                DealModel.risk_level,
                DealModel.scored_at,
            ).where(*_open_deals(tenant_id))
            result = await session.execute(stmt)
            return [
                DealScoreEnvelope(
                    deal_id=str(row.id),
                    health_score=row.health_score,
                    risk_level=row.risk_level,
                    scored_at=row.scored_at,
                )
                for row in result.all()
            ]

    # ── Days In Stage ───────────────────────────────────────────────────────

    async def list_open_stage_entries(
        self, tenant_id: str
    ) -> list[tuple[str, datetime]]:
        """(deal_id, stage_entered_at) for open deals with a known stage entry time."""
        async for session in self._session_factory():
            stmt = select(DealModel.id, DealModel.stage_entered_at).where(
                *_open_deals(tenant_id),
                DealModel.stage_entered_at.is_not(None),
            )
            result = await session.execute(stmt)
            return [(str(row.id), row.stage_entered_at) for row in result.all()]

    async def set_days_in_stage(self, tenant_id: str, days_by_deal: dict[str, int]) -> int:
        """Persist recomputed days_in_stage values. Returns rows updated."""
        if not days_by_deal:
            return 0
        async for session in self._session_factory():
            updated = 0
            for deal_id, days in days_by_deal.items():
                result = await session.execute(
                    update(DealModel)
                    .where(
                        DealModel.tenant_id == uuid.UUID(tenant_id),
                        DealModel.id == uuid.UUID(deal_id),
                    )
                    .values(days_in_stage=days)
                )
                updated += result.rowcount
            await session.commit()
            return updated
