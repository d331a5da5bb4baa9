"""Integration persistence -- integrations, sync runs and CRM owner lookups.

Provides two repositories using the session_factory callable pattern:
- IntegrationRepository: Integration lifecycle (connect, token rotation,
  status transitions, disconnect) and the append-only SyncRun audit trail
- OwnerDirectory: Tenant users and their provider-native user ids, used by
  the Reconciliation Engine for deal owner resolution

All methods take tenant_id (or an integration id already scoped to one
tenant) and never read across tenants.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.revsignal.integrations.models import IntegrationModel, SyncRunModel
from src.revsignal.integrations.schemas import (
    IntegrationRead,
    IntegrationStatus,
    Provider,
    SyncRecordError,
    SyncRunRead,
    SyncRunStatus,
    SyncType,
)
from src.revsignal.models.tenant import CrmUserMapping, User

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_integration(model: IntegrationModel) -> IntegrationRead:
    return IntegrationRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=Provider(model.provider),
        status=IntegrationStatus(model.status),
        access_token=model.access_token or "",
        refresh_token=model.refresh_token,
        token_expires_at=model.token_expires_at,
        last_sync_at=model.last_sync_at,
        sync_error=model.sync_error,
        settings=model.settings or {},
        created_at=model.created_at,
        deleted_at=model.deleted_at,
    )


def _model_to_sync_run(model: SyncRunModel) -> SyncRunRead:
    return SyncRunRead(
        id=str(model.id),
        integration_id=str(model.integration_id),
        sync_type=SyncType(model.sync_type),
        status=SyncRunStatus(model.status),
        records_synced=model.records_synced or 0,
        errors=[SyncRecordError.model_validate(e) for e in (model.errors or [])],
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


# ── Integrations ────────────────────────────────────────────────────────────


class IntegrationRepository:
    """Async CRUD for integrations and sync runs.

    Token columns are opaque ciphertext here; encryption is the caller's job.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_integration(
        self, tenant_id: str, provider: Provider
    ) -> IntegrationRead | None:
        """Get the live (non-deleted) integration for a tenant/provider pair."""
        async for session in self._session_factory():
            stmt = select(IntegrationModel).where(
                IntegrationModel.tenant_id == uuid.UUID(tenant_id),
                IntegrationModel.provider == provider.value,
                IntegrationModel.deleted_at.is_(None),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_integration(model)

    async def get_by_id(self, integration_id: str) -> IntegrationRead | None:
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, uuid.UUID(integration_id))
            if model is None:
                return None
            return _model_to_integration(model)

    async def list_integrations(self, tenant_id: str) -> list[IntegrationRead]:
        """All live integrations for a tenant."""
        async for session in self._session_factory():
            stmt = (
                select(IntegrationModel)
                .where(
                    IntegrationModel.tenant_id == uuid.UUID(tenant_id),
                    IntegrationModel.deleted_at.is_(None),
                )
                .order_by(IntegrationModel.provider)
            )
            result = await session.execute(stmt)
            return [_model_to_integration(m) for m in result.scalars().all()]

    async def upsert_connected(
        self,
        tenant_id: str,
        provider: Provider,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        settings: dict[str, Any],
    ) -> IntegrationRead:
        """Create or revive the tenant/provider integration after an OAuth callback.

        Clears any previous error and soft-delete marker. Provider settings
        are replaced by the ones from this authorization.
        """
        now = datetime.now(timezone.utc)
        stmt = pg_insert(IntegrationModel).values(
            tenant_id=uuid.UUID(tenant_id),
            provider=provider.value,
            status=IntegrationStatus.CONNECTED.value,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            settings=settings,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "provider"],
            set_={
                "status": IntegrationStatus.CONNECTED.value,
                "access_token": stmt.excluded.access_token,
                "refresh_token": stmt.excluded.refresh_token,
                "token_expires_at": stmt.excluded.token_expires_at,
                "settings": stmt.excluded.settings,
                "sync_error": None,
                "deleted_at": None,
                "updated_at": now,
            },
        ).returning(IntegrationModel.id)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            integration_id = result.scalar_one()
            await session.commit()
            model = await session.get(IntegrationModel, integration_id, populate_existing=True)
            return _model_to_integration(model)

    async def update_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        """Persist a refreshed (and possibly rotated) token set."""
        async for session in self._session_factory():
            await session.execute(
                update(IntegrationModel)
                .where(IntegrationModel.id == uuid.UUID(integration_id))
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                )
            )
            await session.commit()

    async def set_status(
        self,
        integration_id: str,
        status: IntegrationStatus,
        *,
        sync_error: str | None = None,
        last_sync_at: datetime | None = None,
    ) -> None:
        """Transition the integration status.

        sync_error is written as given (None clears it). last_sync_at is only
        written when provided.
        """
        values: dict[str, Any] = {"status": status.value, "sync_error": sync_error}
        if last_sync_at is not None:
            values["last_sync_at"] = last_sync_at
        async for session in self._session_factory():
            await session.execute(
                update(IntegrationModel)
                .where(IntegrationModel.id == uuid.UUID(integration_id))
                .values(**values)
            )
            await session.commit()

    async def mark_syncing(self, integration_id: str, stale_before: datetime) -> bool:
        """Atomically move a non-syncing integration to syncing.

        A row left in syncing with updated_at older than stale_before is
        taken over.
        Returns False when another cycle already holds the syncing status.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(IntegrationModel)
                .where(
                    IntegrationModel.id == uuid.UUID(integration_id),
                    IntegrationModel.deleted_at.is_(None),
                    or_(
                        IntegrationModel.status != IntegrationStatus.SYNCING.value,
                        and_(
                            IntegrationModel.updated_at.is_not(None),
                            IntegrationModel.updated_at < stale_before,
                        ),
                    ),
                )
                .values(status=IntegrationStatus.SYNCING.value, updated_at=func.now())
            )
            await session.commit()
            return result.rowcount > 0

    async def disconnect(self, tenant_id: str, provider: Provider) -> bool:
        """Clear tokens and soft-delete. Returns False if nothing was connected."""
        async for session in self._session_factory():
            result = await session.execute(
                update(IntegrationModel)
                .where(
                    IntegrationModel.tenant_id == uuid.UUID(tenant_id),
                    IntegrationModel.provider == provider.value,
                    IntegrationModel.deleted_at.is_(None),
                )
                .values(
                    status=IntegrationStatus.DISCONNECTED.value,
                    access_token="",
                    refresh_token=None,
                    deleted_at=func.now(),
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Sync Runs ───────────────────────────────────────────────────────────

    async def create_sync_run(
        self, integration_id: str, sync_type: SyncType
    ) -> SyncRunRead:
        async for session in self._session_factory():
            model = SyncRunModel(
                integration_id=uuid.UUID(integration_id),
                sync_type=sync_type.value,
                status=SyncRunStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_run(model)

    async def finish_sync_run(
        self,
        sync_run_id: str,
        status: SyncRunStatus,
        records_synced: int,
        errors: list[SyncRecordError],
    ) -> SyncRunRead:
        """Write the terminal state of a run. Terminal runs are never touched again."""
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncRunModel)
                .where(
                    SyncRunModel.id == uuid.UUID(sync_run_id),
                    SyncRunModel.status == SyncRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    records_synced=records_synced,
                    errors=[e.model_dump() for e in errors],
                    completed_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount == 0:
                logger.warning("sync.run_already_terminal", sync_run_id=sync_run_id)
            await session.commit()
            model = await session.get(SyncRunModel, uuid.UUID(sync_run_id), populate_existing=True)
            return _model_to_sync_run(model)

    async def list_sync_runs(
        self, integration_id: str, limit: int = 10
    ) -> list[SyncRunRead]:
        """Most recent runs first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncRunModel)
                .where(SyncRunModel.integration_id == uuid.UUID(integration_id))
                .order_by(SyncRunModel.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_run(m) for m in result.scalars().all()]


# ── Owner Directory ─────────────────────────────────────────────────────────


class OwnerDirectory:
    """Tenant user lookups for CRM owner resolution.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def find_user_id_by_email(self, tenant_id: str, email: str) -> str | None:
        """Case-insensitive email match among active tenant users."""
        async for session in self._session_factory():
            stmt = select(User.id).where(
                User.tenant_id == uuid.UUID(tenant_id),
                func.lower(User.email) == email.lower(),
                User.is_active.is_(True),
            )
            result = await session.execute(stmt)
            user_id = result.scalars().first()
            return str(user_id) if user_id else None

    async def record_mapping(
        self, tenant_id: str, provider: Provider, external_user_id: str, user_id: str
    ) -> None:
        """Record a provider-native user id against an internal user. Idempotent."""
        stmt = pg_insert(CrmUserMapping).values(
            tenant_id=uuid.UUID(tenant_id),
            provider=provider.value,
            external_user_id=external_user_id,
            user_id=uuid.UUID(user_id),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "provider", "external_user_id"],
            set_={"user_id": stmt.excluded.user_id, "updated_at": func.now()},
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()

    async def get_mappings(self, tenant_id: str, provider: Provider) -> dict[str, str]:
        """All recorded provider user id -> internal user id pairs."""
        async for session in self._session_factory():
            stmt = select(CrmUserMapping.external_user_id, CrmUserMapping.user_id).where(
                CrmUserMapping.tenant_id == uuid.UUID(tenant_id),
                CrmUserMapping.provider == provider.value,
            )
            result = await session.execute(stmt)
            return {external_id: str(user_id) for external_id, user_id in result.all()}

    async def find_first_admin(self, tenant_id: str) -> str | None:
        """Earliest-created active administrator of the tenant."""
        async for session in self._session_factory():
            stmt = (
                select(User.id)
                .where(
                    User.tenant_id == uuid.UUID(tenant_id),
                    User.role == "admin",
                    User.is_active.is_(True),
                )
                .order_by(User.created_at, User.id)
                .limit(1)
            )
            result = await session.execute(stmt)
            user_id = result.scalar_one_or_none()
            return str(user_id) if user_id else None
