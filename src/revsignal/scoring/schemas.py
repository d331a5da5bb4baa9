"""Pydantic schemas for deal health scoring.

Defines:
- Input contract: DealDataForScoring with RecentActivity, DealContactRole,
  DealSignalInput
- Output contract: AIScoreResponse (validated model output) and ScoreFactors
- Results: ScoringResult, BatchScoringResult, DealScoreView, ScoringStats
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.revsignal.deals.schemas import RiskLevel

# Strict numbers: "72" or true from the model are validation failures
Percentage = Annotated[float, Field(strict=True, ge=0, le=100)]


# ── Input Contract ──────────────────────────────────────────────────────────


class RecentActivity(BaseModel):
    type: str
    created_at: datetime
    subject: str | None = None


class DealContactRole(BaseModel):
    role: str | None = None
    is_primary: bool = False


class DealSignalInput(BaseModel):
    type: str
    sentiment_label: str | None = None
    occurred_at: datetime


class DealDataForScoring(BaseModel):
    """Everything the Deal Health Model sees about one deal."""

    id: str
    name: str
    amount: float | None = None
    stage: str
    days_in_stage: int | None = None
    expected_close_date: datetime | None = None
    status: str
    last_activity_at: datetime | None = None
    contact_count: int = 0
    activity_count: int = 0
    recent_activities: list[RecentActivity] = Field(default_factory=list)
    contacts: list[DealContactRole] = Field(default_factory=list)
    signals: list[DealSignalInput] = Field(default_factory=list)


# ── Output Contract ─────────────────────────────────────────────────────────


class ScoreFactors(BaseModel):
    """Fixed five-key factor map. Values are clamped into 0-100."""

    engagement: float = Field(strict=True)
    velocity: float = Field(strict=True)
    stakeholders: float = Field(strict=True)
    recency: float = Field(strict=True)
    deal_strength: float = Field(strict=True)

    @field_validator("*")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return max(0.0, min(100.0, float(v)))


class AIScoreResponse(BaseModel):
    """Validated inference output. Any violation rejects the whole response."""

    model_config = ConfigDict(populate_by_name=True)

    score: Percentage
    win_probability: Percentage = Field(alias="winProbability")
    risk_level: RiskLevel = Field(alias="riskLevel")
    factors: ScoreFactors
    risk_factors: list[str] = Field(default_factory=list, alias="riskFactors")
    recommendations: list[str] = Field(default_factory=list)
    summary: str = ""

    @field_validator("risk_level", mode="before")
    @classmethod
    def _upper_risk_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    def snapshot_factors(self) -> dict[str, Any]:
        """Factor payload stored on the history row, with narrative fields embedded."""
        return {
            **self.factors.model_dump(),
            "riskFactors": list(self.risk_factors),
            "recommendations": list(self.recommendations),
            "summary": self.summary,
        }


# ── Results ─────────────────────────────────────────────────────────────────


class ScoringResult(BaseModel):
    """Outcome of scoring one deal."""

    deal_id: str
    success: bool
    score: AIScoreResponse | None = None
    error: str | None = None


class BatchScoringResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    results: list[ScoringResult] = Field(default_factory=list)


class DealScoreView(BaseModel):
    """Live score of a deal plus narrative from its latest snapshot."""

    deal_id: str
    deal_name: str
    score: float | None = None
    win_probability: float | None = None
    factors: dict[str, Any] | None = None
    risk_level: RiskLevel | None = None
    risk_factors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    summary: str | None = None
    scored_at: datetime | None = None
    is_stale: bool = True


class RiskDistributionEntry(BaseModel):
    risk_level: RiskLevel
    count: int


class ScoringStats(BaseModel):
    total_deals: int = 0
    scored_deals: int = 0
    unscored_deals: int = 0
    stale_scores: int = 0
    average_score: float | None = None
    coverage_percent: int = 0
    distribution: list[RiskDistributionEntry] = Field(default_factory=list)
