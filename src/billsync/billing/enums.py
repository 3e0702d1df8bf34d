"""
Closed vocabularies shared by the reconciliation components.

Stripe's own enums are open-ended; everything the engine stores or branches on
is narrowed to one of the enums below.
"""

from enum import Enum


class StripeEventType(str, Enum):
    """Stripe event types the poller asks for."""

    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_SUBSCRIPTION_CREATED = "customer.subscription.created"
    CUSTOMER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    CUSTOMER_SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    CUSTOMER_SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    CUSTOMER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"

    @property
    def is_customer_event(self) -> bool:
        return self in CUSTOMER_EVENT_TYPES

    @property
    def is_subscription_event(self) -> bool:
        return self in SUBSCRIPTION_EVENT_TYPES


CUSTOMER_EVENT_TYPES = frozenset(
    {
        StripeEventType.CUSTOMER_CREATED,
        StripeEventType.CUSTOMER_UPDATED,
    }
)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        StripeEventType.CUSTOMER_SUBSCRIPTION_CREATED,
        StripeEventType.CUSTOMER_SUBSCRIPTION_UPDATED,
        StripeEventType.CUSTOMER_SUBSCRIPTION_PAUSED,
        StripeEventType.CUSTOMER_SUBSCRIPTION_RESUMED,
        StripeEventType.CUSTOMER_SUBSCRIPTION_DELETED,
    }
)


def normalize_event_type(raw: str) -> str:
    """Strip quoting and escaping artifacts from a serialized event type.

    ``'"customer.created"'`` and ``'\\"customer.created\\"'`` both become
    ``'customer.created'``.
    """
    return raw.strip().replace("\\", "").strip("\"'").strip()


def parse_event_type(raw: str) -> StripeEventType | None:
    """Map a raw type string onto the allow-list, or None for anything else."""
    try:
        return StripeEventType(normalize_event_type(raw))
    except ValueError:
        return None


class SubscriptionKind(str, Enum):
    """Plan classification of a subscription."""

    BASE_FREE = "base_free"
    BASE_PAID = "base_paid"
    TRIAL = "trial"


class SubscriptionStatus(str, Enum):
    """Stripe subscription lifecycle state, stored verbatim."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED)


ACTIVE_SUBSCRIPTION_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
    }
)


class CancellationReason(str, Enum):
    """Reason Stripe reports in ``cancellation_details.reason``."""

    CANCELLATION_REQUESTED = "cancellation_requested"
    PAYMENT_DISPUTED = "payment_disputed"
    PAYMENT_FAILED = "payment_failed"


class CompletionMode(str, Enum):
    """Request mode a usage meter is counted under."""

    NORMAL = "normal"
    MAX = "max"
