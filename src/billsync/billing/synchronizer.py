"""
Subscription synchronizer.

Reconciles a Stripe subscription snapshot with the local customer and
subscription rows. Applying the same snapshot twice converges to the same
state, so events may safely be replayed when a ledger write was lost.
"""

from datetime import UTC, datetime

import structlog

from billsync.billing.catalog import PriceCatalog
from billsync.billing.enums import CancellationReason, SubscriptionKind, SubscriptionStatus
from billsync.billing.exceptions import BillingCustomerNotFoundError, SubscriptionSyncError
from billsync.billing.models import BillingCustomer, BillingSubscription
from billsync.billing.schemas import StripeSubscription
from billsync.billing.store import BillingStore, SubscriptionFields
from billsync.billing.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


def _from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class SubscriptionSynchronizer:
    """Applies Stripe subscription snapshots to the billing store."""

    def __init__(self, store: BillingStore, stripe_client: StripeClient, catalog: PriceCatalog):
        self.store = store
        self.stripe_client = stripe_client
        self.catalog = catalog

    async def find_or_create_customer(self, stripe_customer_id: str) -> BillingCustomer:
        """Resolve the local customer for a Stripe customer ID.

        Unknown customers are fetched from Stripe and bound to the account with
        the same email address.

        Raises:
            BillingCustomerNotFoundError: The Stripe customer has no email, no
                account matches it, or the account is bound to another Stripe
                customer.
        """
        customer = await self.store.get_customer_by_stripe_id(stripe_customer_id)
        if customer is not None:
            return customer

        stripe_customer = await self.stripe_client.get_customer(stripe_customer_id)
        if not stripe_customer.email:
            raise BillingCustomerNotFoundError(
                "Stripe customer has no email", stripe_customer_id=stripe_customer_id
            )

        account = await self.store.get_account_by_email(stripe_customer.email)
        if account is None:
            raise BillingCustomerNotFoundError(
                "no account found for Stripe customer email",
                stripe_customer_id=stripe_customer_id,
            )

        bound = await self.store.get_customer_by_account_id(account.id)
        if bound is not None:
            raise BillingCustomerNotFoundError(
                f"account is already bound to Stripe customer {bound.stripe_customer_id}",
                stripe_customer_id=stripe_customer_id,
                account_id=account.id,
            )

        return await self.store.create_customer(account.id, stripe_customer_id)

    async def sync_subscription(self, subscription: StripeSubscription) -> BillingCustomer:
        """Reconcile one subscription snapshot and return the affected customer."""
        log = logger.bind(
            stripe_subscription_id=subscription.id,
            stripe_customer_id=subscription.customer,
            status=subscription.status.value,
        )
        kind = self.catalog.classify_subscription(subscription)
        customer = await self.find_or_create_customer(subscription.customer)

        customer = await self._record_trial_start(customer, subscription, kind)
        customer = await self._flag_payment_failure(customer, subscription)

        fields = self._subscription_fields(subscription, customer.id, kind)
        existing = await self.store.get_subscription_by_stripe_id(subscription.id)
        if existing is not None:
            await self.store.update_subscription(existing.id, **fields.as_dict())
            log.info("billing_subscription.updated", subscription_id=existing.id)
        else:
            active = await self.store.get_active_subscription(customer.account_id)
            if active is not None:
                if active.kind == SubscriptionKind.BASE_FREE and kind == SubscriptionKind.TRIAL:
                    await self._cancel_free_subscription(active)
                else:
                    # Accepted race: if a cancellation of the active subscription
                    # is processed after this creation, the account is left with
                    # no subscription until the next resync.
                    log.info(
                        "billing_subscription.creation_skipped",
                        account_id=customer.account_id,
                        active_stripe_subscription_id=active.stripe_subscription_id,
                    )
                    return customer

            await self.store.create_subscription(fields)

        if subscription.status.is_terminal:
            if not await self.store.has_active_subscription(customer.account_id):
                await self.catalog.subscribe_to_free_plan(customer.stripe_customer_id)

        return customer

    async def sync_customer_subscriptions(
        self, account_id: int | None = None, email: str | None = None
    ) -> BillingCustomer:
        """Re-apply every Stripe subscription of one account.

        The account is identified by ``account_id`` or ``email``. The first
        subscription that fails to sync aborts the resync.
        """
        if account_id is None:
            if email is None:
                raise ValueError("account_id or email is required")
            account = await self.store.get_account_by_email(email)
            if account is None:
                raise BillingCustomerNotFoundError(f"no account found for {email}")
            account_id = account.id

        customer = await self.store.get_customer_by_account_id(account_id)
        if customer is None:
            raise BillingCustomerNotFoundError(
                "billing customer not found", account_id=account_id
            )

        subscriptions = await self.stripe_client.list_subscriptions_for_customer(
            customer.stripe_customer_id
        )
        for subscription in subscriptions:
            try:
                customer = await self.sync_subscription(subscription)
            except SubscriptionSyncError:
                raise
            except Exception as exc:
                raise SubscriptionSyncError(
                    f"failed to sync subscription {subscription.id} for account {account_id}: {exc}",
                    stripe_subscription_id=subscription.id,
                    context={"account_id": account_id},
                ) from exc

        logger.info(
            "billing_customer.resynced",
            account_id=account_id,
            stripe_customer_id=customer.stripe_customer_id,
            subscription_count=len(subscriptions),
        )
        return customer

    async def _record_trial_start(
        self,
        customer: BillingCustomer,
        subscription: StripeSubscription,
        kind: SubscriptionKind | None,
    ) -> BillingCustomer:
        if kind != SubscriptionKind.TRIAL or subscription.status != SubscriptionStatus.TRIALING:
            return customer
        # One trial per customer lifetime
        if customer.trial_started_at is not None:
            return customer
        if subscription.current_period_start is None:
            raise SubscriptionSyncError(
                "trial subscription has no current period start",
                stripe_subscription_id=subscription.id,
            )

        trial_started_at = _from_timestamp(subscription.current_period_start)
        logger.info(
            "billing_customer.trial_started",
            account_id=customer.account_id,
            trial_started_at=trial_started_at.isoformat() if trial_started_at else None,
        )
        return await self.store.update_customer(customer.id, trial_started_at=trial_started_at)

    async def _flag_payment_failure(
        self, customer: BillingCustomer, subscription: StripeSubscription
    ) -> BillingCustomer:
        if subscription.status != SubscriptionStatus.CANCELED:
            return customer
        if subscription.cancellation_reason != CancellationReason.PAYMENT_FAILED:
            return customer

        logger.warning(
            "billing_customer.overdue_invoices",
            account_id=customer.account_id,
            stripe_subscription_id=subscription.id,
        )
        return await self.store.update_customer(customer.id, has_overdue_invoices=True)

    async def _cancel_free_subscription(self, active: BillingSubscription) -> None:
        """Cancel a free subscription the account is upgrading from."""
        canceled = await self.stripe_client.cancel_subscription(active.stripe_subscription_id)
        await self.store.update_subscription(
            active.id,
            stripe_subscription_status=canceled.status,
            stripe_cancel_at=_from_timestamp(canceled.cancel_at),
            stripe_cancellation_reason=canceled.cancellation_reason,
            stripe_current_period_start=canceled.current_period_start,
            stripe_current_period_end=canceled.current_period_end,
        )
        logger.info(
            "billing_subscription.free_plan_canceled",
            stripe_subscription_id=active.stripe_subscription_id,
            status=canceled.status.value,
        )

    @staticmethod
    def _subscription_fields(
        subscription: StripeSubscription,
        billing_customer_id: int,
        kind: SubscriptionKind | None,
    ) -> SubscriptionFields:
        return SubscriptionFields(
            billing_customer_id=billing_customer_id,
            kind=kind,
            stripe_subscription_id=subscription.id,
            stripe_subscription_status=subscription.status,
            stripe_cancel_at=_from_timestamp(subscription.cancel_at),
            stripe_cancellation_reason=subscription.cancellation_reason,
            stripe_current_period_start=subscription.current_period_start,
            stripe_current_period_end=subscription.current_period_end,
        )
