"""Scoring Orchestrator -- candidate selection, sequential batch scoring,
score reads and aggregate statistics.

Deals are scored one at a time. Once a batch exceeds THROTTLE_AFTER deals a
short delay is inserted between inference calls. A failure on one deal is
recorded in the batch result and the loop moves on; no deal is retried within
the same batch.

An in-process registry of deals being scored rejects a second concurrent
request for the same deal with ScoringInProgress, whether it comes from a
batch or from a manual single-deal request.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.revsignal.core.errors import (
    DealNotFound,
    InferenceProviderError,
    ModelValidationError,
    ScoringInProgress,
)
from src.revsignal.core.monitoring import deal_scores_total
from src.revsignal.deals.repository import DealRepository
from src.revsignal.deals.schemas import DealScoreSnapshotRead, RiskLevel
from src.revsignal.scoring.model import DealHealthModel, is_stale
from src.revsignal.scoring.schemas import (
    AIScoreResponse,
    BatchScoringResult,
    DealScoreView,
    RiskDistributionEntry,
    ScoringResult,
    ScoringStats,
)

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_LIMIT = 25
MAX_HISTORY_LIMIT = 50
THROTTLE_AFTER = 10
THROTTLE_DELAY_SECONDS = 0.2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScoringOrchestrator:
    """Drive the Deal Health Model over a tenant's open deals.

    Args:
        deals: Deal persistence (candidates, scoring input, score writes).
        model: Deal Health Model.
        model_version: Recorded on every score snapshot.
        stale_after: Age beyond which a score is stale.
        batch_limit: Candidates per batch when the caller gives no limit.
        throttle_after: Batch size above which calls are spaced out.
        throttle_delay: Seconds slept between calls in a throttled batch.
        sleep: Awaitable sleep, injectable for tests.
        now: Clock, injectable for tests.
    """

    def __init__(
        self,
        deals: DealRepository,
        model: DealHealthModel,
        model_version: str,
        stale_after: timedelta = timedelta(hours=24),
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        throttle_after: int = THROTTLE_AFTER,
        throttle_delay: float = THROTTLE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._deals = deals
        self._model = model
        self._model_version = model_version
        self._stale_after = stale_after
        self._batch_limit = batch_limit
        self._throttle_after = throttle_after
        self._throttle_delay = throttle_delay
        self._sleep = sleep
        self._now = now
        self._in_flight: set[tuple[str, str]] = set()

    # ── Scoring ─────────────────────────────────────────────────────────────

    async def score_deal(self, tenant_id: str, deal_id: str) -> AIScoreResponse:
        """Score one deal and persist the result.

        Raises:
            ScoringInProgress: The deal is already being scored.
            DealNotFound: No such deal for this tenant.
            ModelValidationError: The model output failed validation.
            InferenceProviderError: The inference call failed.
        """
        key = (tenant_id, deal_id)
        if key in self._in_flight:
            raise ScoringInProgress(f"Deal {deal_id} is already being scored")
        self._in_flight.add(key)
        try:
            return await self._score(tenant_id, deal_id)
        finally:
            self._in_flight.discard(key)

    async def _score(self, tenant_id: str, deal_id: str) -> AIScoreResponse:
        deal_data = await self._deals.get_scoring_input(tenant_id, deal_id)
        if deal_data is None:
            raise DealNotFound(f"Deal {deal_id} not found")

        now = self._now()
        try:
            response = await self._model.evaluate(deal_data, now)
        except (ModelValidationError, InferenceProviderError) as exc:
            deal_scores_total.labels(status="failed").inc()
            logger.warning(
                "scoring.deal_failed",
                tenant_id=tenant_id,
                deal_id=deal_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        await self._deals.apply_score(
            tenant_id, deal_id, response, self._model_version, now
        )
        deal_scores_total.labels(status="success").inc()
        logger.info(
            "scoring.deal_scored",
            tenant_id=tenant_id,
            deal_id=deal_id,
            score=response.score,
            risk_level=response.risk_level.value,
        )
        return response

    async def score_batch(
        self,
        tenant_id: str,
        limit: int | None = None,
        only_unscored: bool = False,
    ) -> BatchScoringResult:
        """Score the tenant's stalest open deals, sequentially.

        Never raises for a per-deal failure; each outcome is reported in the
        returned BatchScoringResult.
        """
        if limit is None:
            limit = self._batch_limit
        stale_before = self._now() - self._stale_after
        deal_ids = await self._deals.list_scoring_candidates(
            tenant_id, stale_before, limit, only_unscored=only_unscored
        )
        logger.info(
            "scoring.batch_started",
            tenant_id=tenant_id,
            candidates=len(deal_ids),
            only_unscored=only_unscored,
        )

        result = BatchScoringResult(total=len(deal_ids))
        throttle = len(deal_ids) > self._throttle_after

        for index, deal_id in enumerate(deal_ids):
            if throttle and index > 0:
                await self._sleep(self._throttle_delay)
            try:
                response = await self.score_deal(tenant_id, deal_id)
            except (
                DealNotFound,
                ScoringInProgress,
                ModelValidationError,
                InferenceProviderError,
            ) as exc:
                result.failed += 1
                result.results.append(
                    ScoringResult(deal_id=deal_id, success=False, error=str(exc))
                )
                continue
            except Exception as exc:
                deal_scores_total.labels(status="failed").inc()
                logger.exception(
                    "scoring.deal_failed",
                    tenant_id=tenant_id,
                    deal_id=deal_id,
                    error_type=type(exc).__name__,
                )
                result.failed += 1
                result.results.append(
                    ScoringResult(deal_id=deal_id, success=False, error=str(exc))
                )
                continue
            result.successful += 1
            result.results.append(
                ScoringResult(deal_id=deal_id, success=True, score=response)
            )

        logger.info(
            "scoring.batch_completed",
            tenant_id=tenant_id,
            total=result.total,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_deal_score(self, tenant_id: str, deal_id: str) -> DealScoreView:
        """Live score plus narrative from the latest snapshot.

        Raises:
            DealNotFound: No such deal for this tenant.
        """
        deal = await self._deals.get_deal(tenant_id, deal_id)
        if deal is None:
            raise DealNotFound(f"Deal {deal_id} not found")

        history = await self._deals.list_score_history(tenant_id, deal_id, limit=1)
        latest = history[0].factors if history else {}

        return DealScoreView(
            deal_id=deal.id,
            deal_name=deal.name,
            score=deal.health_score,
            win_probability=deal.win_probability,
            factors=deal.score_factors,
            risk_level=deal.risk_level,
            risk_factors=deal.risk_factors,
            recommendations=latest.get("recommendations", []),
            summary=latest.get("summary"),
            scored_at=deal.scored_at,
            is_stale=is_stale(deal.scored_at, self._now(), self._stale_after),
        )

    async def get_score_history(
        self, tenant_id: str, deal_id: str, limit: int = 10
    ) -> list[DealScoreSnapshotRead]:
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        return await self._deals.list_score_history(tenant_id, deal_id, limit=limit)

    async def get_scoring_stats(self, tenant_id: str) -> ScoringStats:
        """Coverage, staleness and risk distribution over open deals."""
        envelopes = await self._deals.list_open_score_envelopes(tenant_id)
        now = self._now()

        scored = [e for e in envelopes if e.health_score is not None]
        stale = sum(
            1
            for e in scored
            if e.scored_at is not None and now - e.scored_at > self._stale_after
        )
        average = (
            round(sum(e.health_score for e in scored) / len(scored), 1)
            if scored
            else None
        )
        coverage = round(len(scored) / len(envelopes) * 100) if envelopes else 0

        levels = Counter(e.risk_level for e in scored if e.risk_level is not None)
        distribution = [
            RiskDistributionEntry(risk_level=level, count=levels[level])
            for level in RiskLevel
            if levels[level]
        ]

        return ScoringStats(
            total_deals=len(envelopes),
            scored_deals=len(scored),
            unscored_deals=len(envelopes) - len(scored),
            stale_scores=stale,
            average_score=average,
            coverage_percent=coverage,
            distribution=distribution,
        )

    # ── Maintenance ─────────────────────────────────────────────────────────

    async def update_days_in_stage(self, tenant_id: str) -> int:
        """Recompute days_in_stage for open deals. Returns rows updated."""
        now = self._now()
        entries = await self._deals.list_open_stage_entries(tenant_id)
        days_by_deal = {
            deal_id: max(0, (now - entered_at).days) for deal_id, entered_at in entries
        }
        updated = await self._deals.set_days_in_stage(tenant_id, days_by_deal)
        logger.info("scoring.days_in_stage_updated", tenant_id=tenant_id, updated=updated)
        return updated
