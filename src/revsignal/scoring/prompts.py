"""Prompt builders for the Deal Health Model.

build_deal_scoring_prompt() is a pure function of its input and the
reference time: derived figures (days since last activity, days until close,
champion / decision-maker presence, activity and sentiment breakdowns) are
computed here and embedded alongside the raw deal fields.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone

from src.revsignal.scoring.schemas import DealDataForScoring

DEAL_SCORING_SYSTEM_PROMPT = """You are an expert sales analytics AI for a revenue intelligence platform. Your role is to analyze deal data and provide accurate health scores, win probabilities, and risk assessments.

You analyze deals based on multiple factors:
1. **Engagement Signals**: Email frequency, response times, meeting attendance
2. **Deal Velocity**: Stage progression speed, time in current stage
3. **Stakeholder Involvement**: Number and roles of contacts engaged
4. **Activity Recency**: Days since last meaningful activity
5. **Deal Characteristics**: Amount, expected close date, stage alignment

Scoring Guidelines:
- Score 0-100 where 100 is highest health
- 70-100: Healthy deal, on track
- 40-69: Needs attention, some concerns
- 0-39: At risk, requires immediate action

Risk Level Guidelines:
- LOW: Score 70+, no significant concerns
- MEDIUM: Score 50-69, some attention needed
- HIGH: Score 30-49, significant concerns
- CRITICAL: Score 0-29, deal at serious risk

Always provide specific, actionable risk factors when applicable."""

RESPONSE_FORMAT_BLOCK = """Provide your analysis in the following JSON format:
{
  "score": <number 0-100>,
  "winProbability": <number 0-100>,
  "riskLevel": "<LOW|MEDIUM|HIGH|CRITICAL>",
  "factors": {
    "engagement": <number 0-100>,
    "velocity": <number 0-100>,
    "stakeholders": <number 0-100>,
    "recency": <number 0-100>,
    "deal_strength": <number 0-100>
  },
  "riskFactors": [<array of specific risk strings if any>],
  "recommendations": [<array of actionable recommendations>],
  "summary": "<brief 1-2 sentence summary>"
}"""

_SECONDS_PER_DAY = 86400


def _whole_days(delta_seconds: float) -> int:
    """Floor of the interval in days (negative intervals floor downwards)."""
    return int(delta_seconds // _SECONDS_PER_DAY)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def derive_signals(deal: DealDataForScoring, now: datetime) -> dict:
    """Figures derived from the raw deal data, as embedded in the prompt."""
    days_since_activity = (
        _whole_days((now - _aware(deal.last_activity_at)).total_seconds())
        if deal.last_activity_at
        else None
    )
    days_until_close = (
        _whole_days((_aware(deal.expected_close_date) - now).total_seconds())
        if deal.expected_close_date
        else None
    )
    roles = [(c.role or "").lower() for c in deal.contacts]
    has_champion = any("champion" in r for r in roles)
    has_decision_maker = any("decision" in r or "economic buyer" in r for r in roles)

    activity_types = Counter(a.type for a in deal.recent_activities)
    sentiments = Counter(s.sentiment_label for s in deal.signals if s.sentiment_label)

    return {
        "days_since_last_activity": days_since_activity,
        "days_until_close": days_until_close,
        "has_champion": has_champion,
        "has_decision_maker": has_decision_maker,
        "activity_types": dict(activity_types),
        "sentiments": dict(sentiments),
    }


def _format_amount(amount: float | None) -> str:
    if not amount:
        return "Not specified"
    return f"${amount:,.0f}" if float(amount).is_integer() else f"${amount:,.2f}"


def build_deal_scoring_prompt(deal: DealDataForScoring, now: datetime | None = None) -> str:
    """User prompt for one deal."""
    now = now or datetime.now(timezone.utc)
    derived = derive_signals(deal, now)

    expected_close = (
        deal.expected_close_date.date().isoformat() if deal.expected_close_date else "Not specified"
    )
    days_in_stage = deal.days_in_stage if deal.days_in_stage is not None else "Unknown"
    days_until_close = derived["days_until_close"]
    if days_until_close is None:
        days_until_close = "Unknown"
    days_since_activity = derived["days_since_last_activity"]
    if days_since_activity is None:
        days_since_activity = "No activity recorded"
    has_champion = "Yes" if derived["has_champion"] else "No"
    has_decision_maker = "Yes" if derived["has_decision_maker"] else "No"

    activity_lines = "\n".join(
        f"- {activity_type}: {count}"
        for activity_type, count in derived["activity_types"].items()
    ) or "- No recent activities"

    sentiment_block = ""
    if derived["sentiments"]:
        sentiment_lines = "\n".join(
            f"- {label}: {count}" for label, count in derived["sentiments"].items()
        )
        sentiment_block = f"\nSIGNAL SENTIMENT:\n{sentiment_lines}\n"

    return f"""Analyze this deal and provide a health score, win probability, and risk assessment.

DEAL INFORMATION:
- Name: {deal.name}
- Amount: {_format_amount(deal.amount)}
- Stage: {deal.stage}
- Status: {deal.status}
- Days in Current Stage: {days_in_stage}
- Expected Close Date: {expected_close}
- Days Until Expected Close: {days_until_close}

ENGAGEMENT METRICS:
- Total Contacts: {deal.contact_count}
- Has Champion: {has_champion}
- Has Decision Maker: {has_decision_maker}
- Total Activities: {deal.activity_count}
- Days Since Last Activity: {days_since_activity}

ACTIVITY BREAKDOWN:
{activity_lines}
{sentiment_block}
{RESPONSE_FORMAT_BLOCK}"""
