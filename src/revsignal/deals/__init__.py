"""Deal pipeline module -- reconciled CRM entities and the scoring envelope.

Provides SQLAlchemy models (Account, Contact, Deal, DealContact, Activity,
DealSignal, DealScoreSnapshot), Pydantic schemas (upsert payloads, read views,
lifecycle status derivation), and DealRepository for async persistence.
"""
