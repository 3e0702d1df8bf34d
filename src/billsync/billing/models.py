"""
Billing reconciliation database tables.

Accounts and usage meters are owned by the surrounding application and only
read here; customers, subscriptions and the processed-event ledger are owned
by the reconciliation engine.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from billsync.billing.enums import (
    CancellationReason,
    CompletionMode,
    SubscriptionKind,
    SubscriptionStatus,
)
from billsync.db import Base, TimestampMixin


def _enum_column(enum_cls: type, name: str) -> Enum:
    """Store the enum value (not the member name) in a portable VARCHAR column."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [member.value for member in members],
        length=32,
    )


class Account(Base):
    """Local account. Reconciliation needs only the email and the staff flag."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_staff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class BillingCustomer(TimestampMixin, Base):
    """Stripe customer bound 1:1 to a local account."""

    __tablename__ = "billing_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    stripe_customer_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Set at most once: a customer gets one trial for their lifetime
    trial_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Set on payment-failure cancellation; cleared only outside this engine
    has_overdue_invoices: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class BillingSubscription(TimestampMixin, Base):
    """Local mirror of a Stripe subscription, keyed by ``stripe_subscription_id``."""

    __tablename__ = "billing_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    billing_customer_id: Mapped[int] = mapped_column(
        ForeignKey("billing_customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[SubscriptionKind | None] = mapped_column(
        _enum_column(SubscriptionKind, "subscription_kind"), nullable=True
    )
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "stripe_subscription_status"), nullable=False
    )
    stripe_cancel_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stripe_cancellation_reason: Mapped[CancellationReason | None] = mapped_column(
        _enum_column(CancellationReason, "stripe_cancellation_reason"), nullable=True
    )
    # Epoch seconds, as reported by Stripe
    stripe_current_period_start: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    stripe_current_period_end: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index(
            "ix_billing_subscriptions_customer_status",
            "billing_customer_id",
            "stripe_subscription_status",
        ),
    )


class ProcessedStripeEvent(Base):
    """Write-once idempotency record: an event listed here is never applied again."""

    __tablename__ = "processed_stripe_events"

    stripe_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    stripe_event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_event_created_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SubscriptionUsageMeter(Base):
    """Per-account, per-model, per-mode request count for one billing period."""

    __tablename__ = "subscription_usage_meters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    mode: Mapped[CompletionMode] = mapped_column(
        _enum_column(CompletionMode, "completion_mode"), nullable=False
    )
    requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_usage_meters_account_period", "account_id", "period_start_at", "period_end_at"),
    )


__all__ = [
    "Account",
    "BillingCustomer",
    "BillingSubscription",
    "ProcessedStripeEvent",
    "SubscriptionUsageMeter",
]
