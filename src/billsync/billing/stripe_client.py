"""
Stripe client used by the reconciliation engine.

``StripeClient`` is the narrow provider contract the engine consumes. The
``StripeSDKClient`` implementation calls the official ``stripe`` SDK in a worker
thread and returns validated snapshots from ``billsync.billing.schemas``.
"""

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billsync.billing.exceptions import ProviderError
from billsync.billing.schemas import (
    EventPage,
    StripeCustomer,
    StripePrice,
    StripeSubscription,
)

logger = structlog.get_logger(__name__)


class StripeClient(Protocol):
    """Provider operations the engine needs."""

    async def list_events(
        self, types: list[str], limit: int, starting_after: str | None = None
    ) -> EventPage: ...

    async def get_customer(self, customer_id: str) -> StripeCustomer: ...

    async def list_subscriptions_for_customer(
        self, customer_id: str
    ) -> list[StripeSubscription]: ...

    async def get_subscription(self, subscription_id: str) -> StripeSubscription: ...

    async def create_subscription(
        self, customer_id: str, price_id: str
    ) -> StripeSubscription: ...

    async def cancel_subscription(self, subscription_id: str) -> StripeSubscription: ...

    async def add_subscription_item(self, subscription_id: str, price_id: str) -> None: ...

    async def list_prices_by_lookup_key(self, lookup_key: str) -> list[StripePrice]: ...

    async def create_meter_event(self, event_name: str, customer_id: str, value: int) -> None: ...


def _to_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _list_all(list_func: Callable[..., Any], **params: Any) -> list[Any]:
    """Drain every page of a Stripe list call; runs in a worker thread."""
    return list(list_func(**params).auto_paging_iter())


# Reads are safe to repeat; mutations are left to the SDK's own network retries.
_retry_transient = retry(
    retry=retry_if_exception_type((stripe.APIConnectionError, stripe.RateLimitError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    reraise=True,
)


class StripeSDKClient:
    """``StripeClient`` backed by the ``stripe`` package."""

    def __init__(
        self,
        api_key: str,
        api_version: str | None = None,
        max_network_retries: int = 2,
    ):
        self.api_key = api_key
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        if api_version:
            stripe.api_version = api_version

    async def _call(
        self, operation: str, func: Callable[..., Any], *args: Any, **params: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **params)
        except stripe.StripeError as exc:
            logger.warning(
                "stripe.call_failed",
                operation=operation,
                error=str(exc),
                code=getattr(exc, "code", None),
            )
            raise ProviderError(
                f"Stripe {operation} failed: {exc}",
                operation=operation,
                context={"stripe_code": getattr(exc, "code", None)},
            ) from exc

    @_retry_transient
    async def _fetch(
        self, operation: str, func: Callable[..., Any], *args: Any, **params: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **params)
        except (stripe.APIConnectionError, stripe.RateLimitError):
            raise
        except stripe.StripeError as exc:
            raise ProviderError(
                f"Stripe {operation} failed: {exc}",
                operation=operation,
                context={"stripe_code": getattr(exc, "code", None)},
            ) from exc

    async def _read(
        self, operation: str, func: Callable[..., Any], *args: Any, **params: Any
    ) -> Any:
        try:
            return await self._fetch(operation, func, *args, **params)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise ProviderError(
                f"Stripe {operation} failed after retries: {exc}", operation=operation
            ) from exc

    async def list_events(
        self, types: list[str], limit: int, starting_after: str | None = None
    ) -> EventPage:
        params: dict[str, Any] = {"types": types, "limit": limit}
        if starting_after:
            params["starting_after"] = starting_after
        page = await self._read("list_events", stripe.Event.list, **params)
        return EventPage(
            data=[_to_dict(event) for event in page.data],
            has_more=bool(page.has_more),
        )

    async def get_customer(self, customer_id: str) -> StripeCustomer:
        customer = await self._read("get_customer", stripe.Customer.retrieve, customer_id)
        return StripeCustomer.model_validate(_to_dict(customer))

    async def list_subscriptions_for_customer(
        self, customer_id: str
    ) -> list[StripeSubscription]:
        subscriptions = await self._read(
            "list_subscriptions",
            _list_all,
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=100,
        )
        return [StripeSubscription.model_validate(_to_dict(sub)) for sub in subscriptions]

    async def get_subscription(self, subscription_id: str) -> StripeSubscription:
        subscription = await self._read(
            "get_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return StripeSubscription.model_validate(_to_dict(subscription))

    async def create_subscription(self, customer_id: str, price_id: str) -> StripeSubscription:
        subscription = await self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
        )
        return StripeSubscription.model_validate(_to_dict(subscription))

    async def cancel_subscription(self, subscription_id: str) -> StripeSubscription:
        subscription = await self._call(
            "cancel_subscription", stripe.Subscription.cancel, subscription_id
        )
        return StripeSubscription.model_validate(_to_dict(subscription))

    async def add_subscription_item(self, subscription_id: str, price_id: str) -> None:
        await self._call(
            "add_subscription_item",
            stripe.SubscriptionItem.create,
            subscription=subscription_id,
            price=price_id,
        )

    async def list_prices_by_lookup_key(self, lookup_key: str) -> list[StripePrice]:
        page = await self._read(
            "list_prices",
            stripe.Price.list,
            lookup_keys=[lookup_key],
            active=True,
            limit=1,
        )
        return [StripePrice.model_validate(_to_dict(price)) for price in page.data]

    async def create_meter_event(self, event_name: str, customer_id: str, value: int) -> None:
        await self._call(
            "create_meter_event",
            stripe.billing.MeterEvent.create,
            event_name=event_name,
            payload={"stripe_customer_id": customer_id, "value": str(value)},
        )


__all__ = ["StripeClient", "StripeSDKClient"]
