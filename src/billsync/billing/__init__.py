"""
Billing reconciliation module.

Provides:
- Processed-event ledger and Stripe event poller
- Event dispatcher and subscription synchronizer
- Usage-to-billing sync
- Periodic job entry points
"""

from billsync.billing.exceptions import (
    BillingConfigurationError,
    BillingCustomerNotFoundError,
    BillingError,
    PriceNotFoundError,
    ProviderError,
    SubscriptionSyncError,
    UnexpectedEventPayloadError,
    UnsupportedModelError,
    UsageSyncError,
)
from billsync.billing.reconciliation import (
    ReconciliationContext,
    build_context,
    run_event_reconciliation_tick,
    run_usage_sync_tick,
)

__all__ = [
    # Exceptions
    "BillingError",
    "BillingConfigurationError",
    "BillingCustomerNotFoundError",
    "PriceNotFoundError",
    "ProviderError",
    "SubscriptionSyncError",
    "UnexpectedEventPayloadError",
    "UnsupportedModelError",
    "UsageSyncError",
    # Entry points
    "ReconciliationContext",
    "build_context",
    "run_event_reconciliation_tick",
    "run_usage_sync_tick",
]
