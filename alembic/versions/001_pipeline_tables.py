"""Pipeline tables: tenants, users, CRM integrations, deals and scoring history.

Revision ID: 001_pipeline_tables
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_pipeline_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _ts(name: str, default: bool = False) -> sa.Column:
    if default:
        return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())
    return sa.Column(name, sa.DateTime(timezone=True), nullable=True)


def upgrade() -> None:
    # ── Tenants & users ─────────────────────────────────────────────────
    op.create_table(
        "tenants",
        _id(),
        sa.Column("slug", sa.String(50), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        _ts("created_at", default=True),
        _ts("deleted_at"),
    )

    op.create_table(
        "users",
        _id(),
        sa.Column(
            "tenant_id",
            UUID(as_uuid=True),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), server_default=sa.text("'rep'")),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        _ts("created_at", default=True),
        sa.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )
    op.create_index("ix_users_tenant_role", "users", ["tenant_id", "role"])

    op.create_table(
        "crm_user_mappings",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_user_id", sa.String(100), nullable=False),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _ts("updated_at", default=True),
        sa.UniqueConstraint(
            "tenant_id",
            "provider",
            "external_user_id",
            name="uq_crm_user_mapping_tenant_provider_external",
        ),
    )

    # ── Integrations ────────────────────────────────────────────────────
    op.create_table(
        "integrations",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'connected'")),
        sa.Column("access_token", sa.Text(), server_default=sa.text("''")),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        _ts("token_expires_at"),
        _ts("last_sync_at"),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("settings", JSON(), server_default=sa.text("'{}'::json")),
        _ts("created_at", default=True),
        _ts("updated_at"),
        _ts("deleted_at"),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_integration_tenant_provider"),
    )

    op.create_table(
        "sync_runs",
        _id(),
        sa.Column(
            "integration_id",
            UUID(as_uuid=True),
            sa.ForeignKey("integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'running'")),
        sa.Column("records_synced", sa.Integer(), server_default=sa.text("0")),
        sa.Column("errors", JSON(), server_default=sa.text("'[]'::json")),
        _ts("started_at", default=True),
        _ts("completed_at"),
    )
    op.create_index(
        "ix_sync_runs_integration_started", "sync_runs", ["integration_id", "started_at"]
    )

    # ── Reconciled CRM entities ─────────────────────────────────────────
    op.create_table(
        "accounts",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("domain", sa.String(300), nullable=True),
        sa.Column("industry", sa.String(100), nullable=True),
        sa.Column("employee_count", sa.Integer(), nullable=True),
        sa.Column("annual_revenue", sa.Float(), nullable=True),
        _ts("synced_at"),
        _ts("created_at", default=True),
        _ts("updated_at"),
        _ts("deleted_at"),
        sa.UniqueConstraint(
            "tenant_id", "provider", "external_id", name="uq_account_tenant_provider_external"
        ),
    )

    op.create_table(
        "contacts",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("role", sa.String(100), nullable=True),
        _ts("synced_at"),
        _ts("created_at", default=True),
        _ts("updated_at"),
        _ts("deleted_at"),
        sa.UniqueConstraint(
            "tenant_id", "provider", "external_id", name="uq_contact_tenant_provider_external"
        ),
    )

    op.create_table(
        "deals",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column(
            "account_id",
            UUID(as_uuid=True),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(3), server_default=sa.text("'USD'")),
        sa.Column("stage", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'open'")),
        sa.Column("probability", sa.Float(), nullable=True),
        _ts("expected_close_date"),
        _ts("actual_close_date"),
        _ts("stage_entered_at"),
        sa.Column("days_in_stage", sa.Integer(), nullable=True),
        _ts("last_activity_at"),
        sa.Column("health_score", sa.Float(), nullable=True),
        sa.Column("win_probability", sa.Float(), nullable=True),
        sa.Column("risk_level", sa.String(20), nullable=True),
        sa.Column("score_factors", JSON(), nullable=True),
        sa.Column("risk_factors", JSON(), server_default=sa.text("'[]'::json")),
        _ts("scored_at"),
        _ts("synced_at"),
        _ts("created_at", default=True),
        _ts("updated_at"),
        _ts("deleted_at"),
        sa.UniqueConstraint(
            "tenant_id", "provider", "external_id", name="uq_deal_tenant_provider_external"
        ),
    )
    op.create_index(
        "ix_deals_tenant_status_scored", "deals", ["tenant_id", "status", "scored_at"]
    )

    op.create_table(
        "deal_contacts",
        _id(),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(100), nullable=True),
        sa.Column("is_primary", sa.Boolean(), server_default=sa.text("false")),
        sa.UniqueConstraint("deal_id", "contact_id", name="uq_deal_contact"),
    )

    op.create_table(
        "activities",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("subject", sa.String(500), nullable=True),
        _ts("created_at", default=True),
    )
    op.create_index("ix_activities_deal_created", "activities", ["deal_id", "created_at"])

    op.create_table(
        "deal_signals",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("sentiment_label", sa.String(30), nullable=True),
        _ts("occurred_at", default=True),
    )
    op.create_index(
        "ix_deal_signals_deal_occurred", "deal_signals", ["deal_id", "occurred_at"]
    )

    # ── Scoring history ─────────────────────────────────────────────────
    op.create_table(
        "deal_scores",
        _id(),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("win_probability", sa.Float(), nullable=True),
        sa.Column("factors", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("model_version", sa.String(50), nullable=False),
        _ts("calculated_at", default=True),
    )
    op.create_index(
        "ix_deal_scores_deal_calculated", "deal_scores", ["deal_id", "calculated_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_deal_scores_deal_calculated", table_name="deal_scores")
    op.drop_table("deal_scores")
    op.drop_index("ix_deal_signals_deal_occurred", table_name="deal_signals")
    op.drop_table("deal_signals")
    op.drop_index("ix_activities_deal_created", table_name="activities")
    op.drop_table("activities")
    op.drop_table("deal_contacts")
    op.drop_index("ix_deals_tenant_status_scored", table_name="deals")
    op.drop_table("deals")
    op.drop_table("contacts")
    op.drop_table("accounts")
    op.drop_index("ix_sync_runs_integration_started", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_table("integrations")
    op.drop_table("crm_user_mappings")
    op.drop_index("ix_users_tenant_role", table_name="users")
    op.drop_table("users")
    op.drop_table("tenants")
