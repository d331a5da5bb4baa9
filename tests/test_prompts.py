"""Tests for the deal scoring prompt builder."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.revsignal.scoring.prompts import (
    DEAL_SCORING_SYSTEM_PROMPT,
    build_deal_scoring_prompt,
    derive_signals,
)
from src.revsignal.scoring.schemas import (
    DealContactRole,
    DealDataForScoring,
    DealSignalInput,
    RecentActivity,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _deal(**overrides) -> DealDataForScoring:
    fields = {
        "id": "deal-1",
        "name": "Acme Expansion",
        "amount": 50000.0,
        "stage": "Negotiation",
        "days_in_stage": 12,
        "expected_close_date": NOW + timedelta(days=30),
        "status": "open",
        "last_activity_at": NOW - timedelta(days=5, hours=3),
        "contact_count": 2,
        "activity_count": 3,
        "recent_activities": [
            RecentActivity(type="email", created_at=NOW - timedelta(days=5)),
            RecentActivity(type="email", created_at=NOW - timedelta(days=7)),
            RecentActivity(type="meeting", created_at=NOW - timedelta(days=9)),
        ],
        "contacts": [
            DealContactRole(role="Champion", is_primary=True),
            DealContactRole(role="Economic Buyer"),
        ],
        "signals": [
            DealSignalInput(type="email_reply", sentiment_label="positive", occurred_at=NOW),
        ],
    }
    fields.update(overrides)
    return DealDataForScoring(**fields)


def test_derived_signals():
    derived = derive_signals(_deal(), NOW)

    assert derived["days_since_last_activity"] == 5
    assert derived["days_until_close"] == 30
    assert derived["has_champion"] is True
    assert derived["has_decision_maker"] is True
    assert derived["activity_types"] == {"email": 2, "meeting": 1}
    assert derived["sentiments"] == {"positive": 1}


def test_overdue_close_date_is_negative():
    derived = derive_signals(_deal(expected_close_date=NOW - timedelta(days=2, hours=1)), NOW)
    assert derived["days_until_close"] == -3


def test_prompt_embeds_deal_fields_and_response_format():
    prompt = build_deal_scoring_prompt(_deal(), NOW)

    assert "- Name: Acme Expansion" in prompt
    assert "- Amount: $50,000" in prompt
    assert "- Days in Current Stage: 12" in prompt
    assert "- Has Champion: Yes" in prompt
    assert "- email: 2" in prompt
    assert "SIGNAL SENTIMENT:" in prompt
    assert '"winProbability"' in prompt


def test_prompt_for_sparse_deal_uses_placeholders():
    deal = _deal(
        amount=None,
        days_in_stage=None,
        expected_close_date=None,
        last_activity_at=None,
        recent_activities=[],
        contacts=[],
        signals=[],
    )
    prompt = build_deal_scoring_prompt(deal, NOW)

    assert "- Amount: Not specified" in prompt
    assert "- Days in Current Stage: Unknown" in prompt
    assert "- Days Since Last Activity: No activity recorded" in prompt
    assert "- No recent activities" in prompt
    assert "- Has Decision Maker: No" in prompt
    assert "SIGNAL SENTIMENT" not in prompt


def test_prompt_is_deterministic_for_fixed_time():
    assert build_deal_scoring_prompt(_deal(), NOW) == build_deal_scoring_prompt(_deal(), NOW)


def test_system_prompt_defines_risk_bands():
    for level in ("LOW", "MEDIUM", "HIGH", "CRITICAL"):
        assert level in DEAL_SCORING_SYSTEM_PROMPT
