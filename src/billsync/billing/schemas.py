"""
Pydantic models of the Stripe objects the engine consumes.

Only the fields reconciliation reads are modelled; everything else in the
provider payload is ignored. Stripe objects are validated from plain dicts,
so the SDK adapter and tests feed the same shapes.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from billsync.billing.enums import (
    CancellationReason,
    StripeEventType,
    SubscriptionStatus,
    normalize_event_type,
    parse_event_type,
)
from billsync.billing.exceptions import UnexpectedEventPayloadError


class StripeModel(BaseModel):
    """Base for provider snapshots: unknown fields are dropped."""

    model_config = ConfigDict(extra="ignore", frozen=True)


def _expandable_id(value: Any) -> Any:
    """Stripe returns either an ID or the expanded object for references."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripePrice(StripeModel):
    id: str
    lookup_key: str | None = None
    active: bool = True


class StripeSubscriptionItem(StripeModel):
    id: str
    price: StripePrice
    current_period_start: int | None = None
    current_period_end: int | None = None


class StripeCancellationDetails(StripeModel):
    reason: CancellationReason | None = None

    @field_validator("reason", mode="before")
    @classmethod
    def drop_unknown_reason(cls, value: Any) -> Any:
        # New reasons Stripe introduces are treated as "no reason given"
        if value is None:
            return None
        try:
            return CancellationReason(value)
        except ValueError:
            return None


class StripeCustomer(StripeModel):
    id: str
    email: str | None = None


class StripeSubscription(StripeModel):
    """Provider subscription snapshot."""

    id: str
    customer: str
    status: SubscriptionStatus
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at: int | None = None
    trial_end: int | None = None
    cancellation_details: StripeCancellationDetails | None = None
    items: list[StripeSubscriptionItem] = Field(default_factory=list)

    @field_validator("customer", mode="before")
    @classmethod
    def unwrap_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("items", mode="before")
    @classmethod
    def unwrap_item_list(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("data") or []
        return value

    @model_validator(mode="before")
    @classmethod
    def period_from_first_item(cls, data: Any) -> Any:
        """Newer API versions only report the current period on subscription items."""
        if not isinstance(data, dict):
            return data
        if data.get("current_period_start") is not None:
            return data
        items = data.get("items")
        if isinstance(items, dict):
            items = items.get("data")
        if not items:
            return data
        first = items[0]
        if not isinstance(first, dict):
            return data
        return {
            **data,
            "current_period_start": first.get("current_period_start"),
            "current_period_end": data.get("current_period_end")
            or first.get("current_period_end"),
        }

    @property
    def cancellation_reason(self) -> CancellationReason | None:
        if self.cancellation_details is None:
            return None
        return self.cancellation_details.reason

    @property
    def price_lookup_keys(self) -> set[str]:
        return {item.price.lookup_key for item in self.items if item.price.lookup_key}

    @property
    def price_ids(self) -> set[str]:
        return {item.price.id for item in self.items}


class StripeEvent(StripeModel):
    """One entry of the Stripe event log.

    ``type`` is kept as the normalized raw string so the ledger records what
    Stripe sent even for types outside the allow-list.
    """

    id: str
    type: str
    created: int
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_event_type(value)
        return value

    @property
    def event_type(self) -> StripeEventType | None:
        return parse_event_type(self.type)

    @property
    def payload(self) -> dict[str, Any]:
        obj = self.data.get("object")
        if not isinstance(obj, dict):
            raise UnexpectedEventPayloadError(
                f"event {self.id} has no data.object", event_id=self.id, event_type=self.type
            )
        return obj

    def customer_payload(self) -> StripeCustomer:
        return self._parse_payload("customer", StripeCustomer)

    def subscription_payload(self) -> StripeSubscription:
        return self._parse_payload("subscription", StripeSubscription)

    def _parse_payload[M: StripeModel](self, object_name: str, model: type[M]) -> M:
        obj = self.payload
        if obj.get("object", object_name) != object_name:
            raise UnexpectedEventPayloadError(
                f"unexpected event payload for {self.id}: expected {object_name}, "
                f"got {obj.get('object')}",
                event_id=self.id,
                event_type=self.type,
            )
        try:
            return model.model_validate(obj)
        except ValidationError as exc:
            raise UnexpectedEventPayloadError(
                f"unexpected event payload for {self.id}: {exc.error_count()} validation errors",
                event_id=self.id,
                event_type=self.type,
            ) from exc


class EventPage(StripeModel):
    """One page of ``GET /v1/events``."""

    data: list[StripeEvent] = Field(default_factory=list)
    has_more: bool = False

    @property
    def next_page_token(self) -> str | None:
        """Cursor for the next page (Stripe's ``starting_after``)."""
        if not self.has_more or not self.data:
            return None
        return self.data[-1].id
