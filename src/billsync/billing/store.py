"""
Durable store for the reconciliation engine.

``BillingStore`` is the contract the poller, dispatcher, synchronizer and usage
sync depend on. ``SQLAlchemyBillingStore`` implements it with one session per
operation, so a failed write never leaves a half-open transaction behind for
the next event or account.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billsync.billing.enums import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    CancellationReason,
    SubscriptionKind,
    SubscriptionStatus,
)
from billsync.billing.models import (
    Account,
    BillingCustomer,
    BillingSubscription,
    ProcessedStripeEvent,
    SubscriptionUsageMeter,
)
from billsync.db import session_scope

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SubscriptionFields:
    """Column values written when a subscription row is created or refreshed."""

    billing_customer_id: int
    kind: SubscriptionKind | None
    stripe_subscription_id: str
    stripe_subscription_status: SubscriptionStatus
    stripe_cancel_at: datetime | None
    stripe_cancellation_reason: CancellationReason | None
    stripe_current_period_start: int | None
    stripe_current_period_end: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "billing_customer_id": self.billing_customer_id,
            "kind": self.kind,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_subscription_status": self.stripe_subscription_status,
            "stripe_cancel_at": self.stripe_cancel_at,
            "stripe_cancellation_reason": self.stripe_cancellation_reason,
            "stripe_current_period_start": self.stripe_current_period_start,
            "stripe_current_period_end": self.stripe_current_period_end,
        }


class BillingStore(Protocol):
    """Persistence operations the reconciliation engine relies on."""

    # Accounts
    async def get_account_by_email(self, email: str) -> Account | None: ...
    async def list_staff_account_ids(self) -> set[int]: ...

    # Customers
    async def get_customer_by_stripe_id(self, stripe_customer_id: str) -> BillingCustomer | None: ...
    async def get_customer_by_account_id(self, account_id: int) -> BillingCustomer | None: ...
    async def create_customer(self, account_id: int, stripe_customer_id: str) -> BillingCustomer: ...
    async def update_customer(self, customer_id: int, **values: Any) -> BillingCustomer: ...

    # Subscriptions
    async def get_subscription_by_stripe_id(
        self, stripe_subscription_id: str
    ) -> BillingSubscription | None: ...
    async def get_active_subscription(self, account_id: int) -> BillingSubscription | None: ...
    async def has_active_subscription(self, account_id: int) -> bool: ...
    async def create_subscription(self, fields: SubscriptionFields) -> BillingSubscription: ...
    async def update_subscription(
        self, subscription_id: int, **values: Any
    ) -> BillingSubscription: ...
    async def list_active_subscriptions(
        self, kinds: Iterable[SubscriptionKind]
    ) -> list[tuple[BillingCustomer, BillingSubscription]]: ...

    # Processed events
    async def get_processed_event_ids(self, event_ids: Iterable[str]) -> set[str]: ...
    async def create_processed_event(
        self, event_id: str, event_type: str, created_timestamp: int
    ) -> bool: ...

    # Usage meters
    async def list_current_usage_meters(self, now: datetime) -> list[SubscriptionUsageMeter]: ...


class SQLAlchemyBillingStore:
    """``BillingStore`` backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ==================== Accounts ====================

    async def get_account_by_email(self, email: str) -> Account | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Account).where(Account.email == email))
            return result.scalar_one_or_none()

    async def list_staff_account_ids(self) -> set[int]:
        async with self.session_factory() as session:
            result = await session.execute(select(Account.id).where(Account.is_staff.is_(True)))
            return set(result.scalars().all())

    # ==================== Customers ====================

    async def get_customer_by_stripe_id(self, stripe_customer_id: str) -> BillingCustomer | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingCustomer).where(
                    BillingCustomer.stripe_customer_id == stripe_customer_id
                )
            )
            return result.scalar_one_or_none()

    async def get_customer_by_account_id(self, account_id: int) -> BillingCustomer | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingCustomer).where(BillingCustomer.account_id == account_id)
            )
            return result.scalar_one_or_none()

    async def create_customer(self, account_id: int, stripe_customer_id: str) -> BillingCustomer:
        customer = BillingCustomer(
            account_id=account_id,
            stripe_customer_id=stripe_customer_id,
            has_overdue_invoices=False,
        )
        async with session_scope(self.session_factory) as session:
            session.add(customer)
        logger.info(
            "billing_customer.created",
            account_id=account_id,
            stripe_customer_id=stripe_customer_id,
        )
        return customer

    async def update_customer(self, customer_id: int, **values: Any) -> BillingCustomer:
        async with session_scope(self.session_factory) as session:
            customer = await session.get(BillingCustomer, customer_id)
            if customer is None:
                raise LookupError(f"billing customer {customer_id} does not exist")
            for name, value in values.items():
                setattr(customer, name, value)
        return customer

    # ==================== Subscriptions ====================

    async def get_subscription_by_stripe_id(
        self, stripe_subscription_id: str
    ) -> BillingSubscription | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingSubscription).where(
                    BillingSubscription.stripe_subscription_id == stripe_subscription_id
                )
            )
            return result.scalar_one_or_none()

    async def get_active_subscription(self, account_id: int) -> BillingSubscription | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingSubscription)
                .join(
                    BillingCustomer,
                    BillingCustomer.id == BillingSubscription.billing_customer_id,
                )
                .where(
                    BillingCustomer.account_id == account_id,
                    BillingSubscription.stripe_subscription_status.in_(
                        list(ACTIVE_SUBSCRIPTION_STATUSES)
                    ),
                )
                .order_by(BillingSubscription.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def has_active_subscription(self, account_id: int) -> bool:
        return await self.get_active_subscription(account_id) is not None

    async def create_subscription(self, fields: SubscriptionFields) -> BillingSubscription:
        subscription = BillingSubscription(**fields.as_dict())
        async with session_scope(self.session_factory) as session:
            session.add(subscription)
        logger.info(
            "billing_subscription.created",
            billing_customer_id=fields.billing_customer_id,
            stripe_subscription_id=fields.stripe_subscription_id,
            status=fields.stripe_subscription_status.value,
        )
        return subscription

    async def update_subscription(self, subscription_id: int, **values: Any) -> BillingSubscription:
        async with session_scope(self.session_factory) as session:
            subscription = await session.get(BillingSubscription, subscription_id)
            if subscription is None:
                raise LookupError(f"billing subscription {subscription_id} does not exist")
            for name, value in values.items():
                setattr(subscription, name, value)
        return subscription

    async def list_active_subscriptions(
        self, kinds: Iterable[SubscriptionKind]
    ) -> list[tuple[BillingCustomer, BillingSubscription]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingCustomer, BillingSubscription)
                .join(
                    BillingSubscription,
                    BillingSubscription.billing_customer_id == BillingCustomer.id,
                )
                .where(
                    BillingSubscription.kind.in_(list(kinds)),
                    BillingSubscription.stripe_subscription_status.in_(
                        list(ACTIVE_SUBSCRIPTION_STATUSES)
                    ),
                )
                .order_by(BillingCustomer.account_id)
            )
            return [(customer, subscription) for customer, subscription in result.all()]

    # ==================== Processed events ====================

    async def get_processed_event_ids(self, event_ids: Iterable[str]) -> set[str]:
        ids = list(event_ids)
        if not ids:
            return set()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ProcessedStripeEvent.stripe_event_id).where(
                    ProcessedStripeEvent.stripe_event_id.in_(ids)
                )
            )
            return set(result.scalars().all())

    async def create_processed_event(
        self, event_id: str, event_type: str, created_timestamp: int
    ) -> bool:
        """Insert a ledger row; returns False when the event was already recorded."""
        record = ProcessedStripeEvent(
            stripe_event_id=event_id,
            stripe_event_type=event_type,
            stripe_event_created_timestamp=created_timestamp,
            processed_at=datetime.now(UTC),
        )
        try:
            async with session_scope(self.session_factory) as session:
                session.add(record)
        except IntegrityError:
            logger.debug("processed_event.already_recorded", event_id=event_id)
            return False
        return True

    # ==================== Usage meters ====================

    async def list_current_usage_meters(self, now: datetime) -> list[SubscriptionUsageMeter]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SubscriptionUsageMeter).where(
                    SubscriptionUsageMeter.period_start_at <= now,
                    SubscriptionUsageMeter.period_end_at > now,
                )
            )
            return list(result.scalars().all())


__all__ = ["BillingStore", "SQLAlchemyBillingStore", "SubscriptionFields"]
