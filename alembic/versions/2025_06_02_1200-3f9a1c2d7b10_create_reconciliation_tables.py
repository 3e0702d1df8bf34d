"""create_reconciliation_tables

Revision ID: 3f9a1c2d7b10
Revises:
Create Date: 2025-06-02 12:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "3f9a1c2d7b10"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create accounts, billing and ledger tables."""

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_staff", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "billing_customers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=False),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("has_overdue_invoices", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id"),
        sa.UniqueConstraint("stripe_customer_id"),
    )

    op.create_table(
        "billing_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("billing_customer_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_subscription_status", sa.String(length=32), nullable=False),
        sa.Column("stripe_cancel_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_cancellation_reason", sa.String(length=32), nullable=True),
        sa.Column("stripe_current_period_start", sa.BigInteger(), nullable=True),
        sa.Column("stripe_current_period_end", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["billing_customer_id"], ["billing_customers.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_subscription_id"),
    )
    op.create_index(
        "ix_billing_subscriptions_billing_customer_id",
        "billing_subscriptions",
        ["billing_customer_id"],
    )
    op.create_index(
        "ix_billing_subscriptions_customer_status",
        "billing_subscriptions",
        ["billing_customer_id", "stripe_subscription_status"],
    )

    op.create_table(
        "processed_stripe_events",
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_event_type", sa.String(length=255), nullable=False),
        sa.Column("stripe_event_created_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("stripe_event_id"),
    )

    op.create_table(
        "subscription_usage_meters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=False),
        sa.Column("mode", sa.String(length=32), nullable=False),
        sa.Column("requests", sa.Integer(), nullable=False),
        sa.Column("period_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_usage_meters_account_period",
        "subscription_usage_meters",
        ["account_id", "period_start_at", "period_end_at"],
    )


def downgrade() -> None:
    """Drop reconciliation tables."""
    op.drop_index("ix_usage_meters_account_period", table_name="subscription_usage_meters")
    op.drop_table("subscription_usage_meters")
    op.drop_table("processed_stripe_events")
    op.drop_index("ix_billing_subscriptions_customer_status", table_name="billing_subscriptions")
    op.drop_index(
        "ix_billing_subscriptions_billing_customer_id", table_name="billing_subscriptions"
    )
    op.drop_table("billing_subscriptions")
    op.drop_table("billing_customers")
    op.drop_table("accounts")
