"""
Price catalog backed by Stripe prices.

Subscriptions are classified by the lookup keys of the prices they carry; the
free and paid plan prices are identified by configured lookup keys.
"""

import structlog

from billsync.billing.enums import SubscriptionKind, SubscriptionStatus
from billsync.billing.exceptions import PriceNotFoundError
from billsync.billing.schemas import StripePrice, StripeSubscription
from billsync.billing.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


class PriceCatalog:
    """Price lookups and plan-level subscription operations."""

    def __init__(
        self,
        stripe_client: StripeClient,
        free_price_lookup_key: str = "free",
        paid_price_lookup_key: str = "pro",
    ):
        self.stripe_client = stripe_client
        self.free_price_lookup_key = free_price_lookup_key
        self.paid_price_lookup_key = paid_price_lookup_key

    def classify_subscription(self, subscription: StripeSubscription) -> SubscriptionKind | None:
        """Determine the plan kind of a subscription, or None if it carries no plan price."""
        lookup_keys = subscription.price_lookup_keys
        if self.paid_price_lookup_key in lookup_keys:
            if subscription.trial_end is not None:
                return SubscriptionKind.TRIAL
            return SubscriptionKind.BASE_PAID
        if self.free_price_lookup_key in lookup_keys:
            return SubscriptionKind.BASE_FREE
        return None

    async def find_price_by_lookup_key(self, lookup_key: str) -> StripePrice:
        prices = await self.stripe_client.list_prices_by_lookup_key(lookup_key)
        if not prices:
            raise PriceNotFoundError(
                f"no active price found for lookup key {lookup_key!r}", lookup_key=lookup_key
            )
        return prices[0]

    async def ensure_subscribed_to_price(self, subscription_id: str, price: StripePrice) -> bool:
        """Add ``price`` to the subscription unless already present.

        Returns True when an item was added.
        """
        subscription = await self.stripe_client.get_subscription(subscription_id)
        if price.id in subscription.price_ids:
            return False

        await self.stripe_client.add_subscription_item(subscription_id, price.id)
        logger.info(
            "stripe_subscription.price_added",
            stripe_subscription_id=subscription_id,
            price_id=price.id,
            lookup_key=price.lookup_key,
        )
        return True

    async def subscribe_to_free_plan(self, customer_id: str) -> StripeSubscription:
        """Enroll a customer in the free plan.

        An existing trialing or active provider subscription is returned
        instead of creating a second one, so replaying the same cancellation
        never stacks free subscriptions.
        """
        subscriptions = await self.stripe_client.list_subscriptions_for_customer(customer_id)
        for subscription in subscriptions:
            if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                logger.info(
                    "free_plan.enrollment_skipped",
                    stripe_customer_id=customer_id,
                    existing_subscription_id=subscription.id,
                )
                return subscription

        price = await self.find_price_by_lookup_key(self.free_price_lookup_key)
        subscription = await self.stripe_client.create_subscription(customer_id, price.id)
        logger.info(
            "free_plan.enrolled",
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription.id,
        )
        return subscription
