"""Billing tables - subscriptions, usage counters, top-up credits, payment sessions.

Revision ID: 001_billing_tables
Revises:
Create Date: 2025-01-20

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_billing_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

RESOURCE_TYPES = ("properties", "ai_generations", "saved_listings")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(50), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "free",
                "pending",
                "active",
                "trialing",
                "cancelled",
                "expired",
                name="subscriptionstatus",
            ),
            nullable=False,
        ),
        sa.Column("usage_anchor", sa.DateTime(timezone=True), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("gateway_ref", sa.String(100), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_subscriptions"),
    )
    op.create_index(
        "ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"], unique=True
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index(
        "ix_subscriptions_current_period_end", "subscriptions", ["current_period_end"]
    )

    resource_type = sa.Enum(*RESOURCE_TYPES, name="resourcetype")

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_type", resource_type, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quota_limit", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_usage_counters"),
        sa.UniqueConstraint(
            "tenant_id",
            "resource_type",
            "period_start",
            name="uq_usage_counters_tenant_id",
        ),
        sa.CheckConstraint("used >= 0", name="ck_usage_counters_used_non_negative"),
        sa.CheckConstraint(
            "quota_limit < 0 OR used <= quota_limit",
            name="ck_usage_counters_used_within_limit",
        ),
    )
    op.create_index("ix_usage_counters_tenant_id", "usage_counters", ["tenant_id"])

    op.create_table(
        "topup_credits",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column(
            "resource_type",
            sa.Enum(*RESOURCE_TYPES, name="resourcetype", create_type=False),
            nullable=False,
        ),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_topup_credits"),
        sa.UniqueConstraint(
            "tenant_id", "resource_type", name="uq_topup_credits_tenant_id"
        ),
        sa.CheckConstraint("balance >= 0", name="ck_topup_credits_balance_non_negative"),
    )
    op.create_index("ix_topup_credits_tenant_id", "topup_credits", ["tenant_id"])

    op.create_table(
        "payment_sessions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.Enum("subscribe", "topup", name="paymentkind"), nullable=False),
        sa.Column("plan_id", sa.String(50), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "initiated",
                "confirmed",
                "failed",
                "expired",
                name="paymentsessionstatus",
            ),
            nullable=False,
        ),
        sa.Column("gateway_ref", sa.String(100), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column(
            "confirmation_payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_payment_sessions"),
    )
    op.create_index("ix_payment_sessions_tenant_id", "payment_sessions", ["tenant_id"])
    op.create_index("ix_payment_sessions_status", "payment_sessions", ["status"])

    # At most one open checkout per tenant
    op.create_index(
        "ix_payment_sessions_open_per_tenant",
        "payment_sessions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'initiated'"),
    )


def downgrade() -> None:
    op.drop_table("payment_sessions")
    op.drop_table("topup_credits")
    op.drop_table("usage_counters")
    op.drop_table("subscriptions")
    op.execute("DROP TYPE IF EXISTS paymentsessionstatus")
    op.execute("DROP TYPE IF EXISTS paymentkind")
    op.execute("DROP TYPE IF EXISTS resourcetype")
    op.execute("DROP TYPE IF EXISTS subscriptionstatus")
