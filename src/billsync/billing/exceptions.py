"""
Billing reconciliation exceptions.

Custom exceptions for reconciliation failures with clear error messages.
Each carries machine-readable context so structured logs show what went wrong
and which provider object was involved.
"""

from typing import Any


class BillingError(Exception):
    """
    Base reconciliation error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for logs
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for structured logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class BillingConfigurationError(BillingError):
    """Billing configuration errors."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            context=context,
            recovery_hint=recovery_hint or "Check billing configuration settings",
        )


class ProviderError(BillingError):
    """A call to the payment provider failed."""

    def __init__(self, message: str, operation: str, context: dict[str, Any] | None = None):
        super().__init__(
            message,
            "PROVIDER_ERROR",
            context={"operation": operation, **(context or {})},
            recovery_hint="The operation is retried on the next tick",
        )


class UnexpectedEventPayloadError(BillingError):
    """Event payload does not have the shape its type promises."""

    def __init__(
        self, message: str, event_id: str | None = None, event_type: str | None = None
    ) -> None:
        context = {}
        if event_id:
            context["event_id"] = event_id
        if event_type:
            context["event_type"] = event_type

        super().__init__(
            message,
            "UNEXPECTED_EVENT_PAYLOAD",
            context=context,
            recovery_hint="Check the Stripe API version the account is pinned to",
        )


class SubscriptionSyncError(BillingError):
    """Provider subscription data cannot be reconciled with local records."""

    def __init__(
        self,
        message: str,
        stripe_subscription_id: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        merged = dict(context or {})
        if stripe_subscription_id:
            merged["stripe_subscription_id"] = stripe_subscription_id

        super().__init__(
            message,
            "SUBSCRIPTION_SYNC_ERROR",
            context=merged,
            recovery_hint="The event is retried on the next poll",
        )


class BillingCustomerNotFoundError(BillingError):
    """Stripe customer cannot be correlated with a local account."""

    def __init__(
        self,
        message: str,
        stripe_customer_id: str | None = None,
        account_id: int | None = None,
    ):
        context: dict[str, Any] = {}
        if stripe_customer_id:
            context["stripe_customer_id"] = stripe_customer_id
        if account_id is not None:
            context["account_id"] = account_id

        super().__init__(
            message,
            "BILLING_CUSTOMER_NOT_FOUND",
            context=context,
            recovery_hint="Ensure the Stripe customer email matches a local account",
        )


class PriceNotFoundError(BillingError):
    """No active Stripe price exists for a lookup key."""

    def __init__(self, message: str, lookup_key: str) -> None:
        super().__init__(
            message,
            "PRICE_NOT_FOUND",
            context={"lookup_key": lookup_key},
            recovery_hint="Create the price in Stripe with this lookup key or fix the configuration",
        )


class UsageSyncError(BillingError):
    """Usage could not be mirrored to Stripe."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "USAGE_SYNC_ERROR", context=context, recovery_hint=recovery_hint
        )


class UnsupportedModelError(UsageSyncError):
    """Usage meter refers to a model/mode outside the metered matrix."""

    def __init__(self, message: str, model: str, mode: str) -> None:
        super().__init__(
            message,
            context={"model": model, "mode": mode},
            recovery_hint="Add the model to the metered model matrix",
        )
        self.error_code = "UNSUPPORTED_MODEL"
