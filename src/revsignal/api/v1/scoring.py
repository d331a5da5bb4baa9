"""REST API endpoints for deal health scoring.

Single-deal and batch scoring, score reads, history, tenant statistics and
the days-in-stage refresh. Batch and maintenance routes are admin-only.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.revsignal.api.deps import get_scoring_orchestrator, get_tenant, require_admin
from src.revsignal.core.errors import (
    DealNotFound,
    InferenceProviderError,
    ModelValidationError,
    ScoringInProgress,
)
from src.revsignal.core.tenant import TenantContext
from src.revsignal.deals.schemas import DealScoreSnapshotRead
from src.revsignal.scoring.schemas import (
    AIScoreResponse,
    BatchScoringResult,
    DealScoreView,
    ScoringStats,
)

router = APIRouter(prefix="/scoring", tags=["scoring"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class BatchScoreRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=100)
    only_unscored: bool = False


class DaysInStageResponse(BaseModel):
    updated: int


def _deal_id(deal_id: str) -> str:
    """Reject malformed ids as not found, before they reach the database."""
    try:
        return str(uuid.UUID(deal_id))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/deals/{deal_id}", response_model=AIScoreResponse, response_model_by_alias=True)
async def score_deal(
    deal_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: Any = Depends(get_scoring_orchestrator),
):
    """Score one deal now. Nothing is persisted on a model failure."""
    try:
        return await orchestrator.score_deal(tenant.tenant_id, _deal_id(deal_id))
    except DealNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ScoringInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ModelValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"AI returned an invalid score: {exc}",
        )
    except InferenceProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post("/batch", response_model=BatchScoringResult, response_model_by_alias=True)
async def score_batch(
    body: BatchScoreRequest,
    tenant: TenantContext = Depends(require_admin),
    orchestrator: Any = Depends(get_scoring_orchestrator),
):
    """Score the tenant's stalest open deals. Per-deal failures are reported, not raised."""
    return await orchestrator.score_batch(
        tenant.tenant_id, limit=body.limit, only_unscored=body.only_unscored
    )


@router.get("/deals/{deal_id}", response_model=DealScoreView)
async def get_deal_score(
    deal_id: str,
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: Any = Depends(get_scoring_orchestrator),
):
    try:
        return await orchestrator.get_deal_score(tenant.tenant_id, _deal_id(deal_id))
    except DealNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("/deals/{deal_id}/history", response_model=list[DealScoreSnapshotRead])
async def get_score_history(
    deal_id: str,
    limit: int = Query(default=10, ge=1, le=50),
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: Any = Depends(get_scoring_orchestrator),
):
    return await orchestrator.get_score_history(
        tenant.tenant_id, _deal_id(deal_id), limit=limit
    )


@router.get("/stats", response_model=ScoringStats)
async def get_scoring_stats(
    tenant: TenantContext = Depends(get_tenant),
    orchestrator: Any = Depends(get_scoring_orchestrator),
):
    return await orchestrator.get_scoring_stats(tenant.tenant_id)


@router.post("/days-in-stage", response_model=DaysInStageResponse)
async def update_days_in_stage(
    tenant: TenantContext = Depends(require_admin),
    orchestrator: Any = Depends(get_scoring_orchestrator),
):
    updated = await orchestrator.update_days_in_stage(tenant.tenant_id)
    return DaysInStageResponse(updated=updated)
