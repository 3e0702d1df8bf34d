"""
Usage-to-billing sync.

Mirrors the local per-model request counters of every active paid subscription
to Stripe as meter events. Each (model, mode) pair of the metered matrix maps to
a Stripe price (added to the subscription on first use) and a meter event name.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from billsync.billing.catalog import PriceCatalog
from billsync.billing.enums import CompletionMode, SubscriptionKind
from billsync.billing.exceptions import UnsupportedModelError, UsageSyncError
from billsync.billing.metrics import ReconciliationMetrics, get_reconciliation_metrics
from billsync.billing.models import BillingCustomer, BillingSubscription, SubscriptionUsageMeter
from billsync.billing.schemas import StripePrice
from billsync.billing.store import BillingStore
from billsync.billing.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

BILLED_SUBSCRIPTION_KINDS = (SubscriptionKind.BASE_PAID,)


@dataclass(frozen=True)
class MeteredModel:
    """One billable (model, mode) combination."""

    model: str
    mode: CompletionMode

    @property
    def price_lookup_key(self) -> str:
        if self.mode == CompletionMode.MAX:
            return f"{self.model}-requests-max"
        return f"{self.model}-requests"

    @property
    def meter_event_name(self) -> str:
        name = f"{self.model.replace('-', '_')}/requests"
        if self.mode == CompletionMode.MAX:
            return f"{name}/max"
        return name


DEFAULT_METERED_MODELS: tuple[MeteredModel, ...] = (
    MeteredModel("claude-opus-4", CompletionMode.MAX),
    MeteredModel("claude-opus-4", CompletionMode.NORMAL),
    MeteredModel("claude-sonnet-4", CompletionMode.MAX),
    MeteredModel("claude-sonnet-4", CompletionMode.NORMAL),
    MeteredModel("claude-3-7-sonnet", CompletionMode.MAX),
    MeteredModel("claude-3-7-sonnet", CompletionMode.NORMAL),
    MeteredModel("claude-3-5-sonnet", CompletionMode.NORMAL),
)


@dataclass(frozen=True)
class ResolvedMeter:
    metered_model: MeteredModel
    price: StripePrice


@dataclass
class UsageSyncSummary:
    """Outcome of one usage sync run."""

    accounts_synced: int = 0
    staff_accounts_skipped: int = 0
    usage_events_reported: int = 0
    failed_account_ids: list[int] = field(default_factory=list)
    interrupted: bool = False


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageSync:
    """Reports current-period request counts to Stripe."""

    def __init__(
        self,
        store: BillingStore,
        catalog: PriceCatalog,
        stripe_client: StripeClient,
        metered_models: Sequence[MeteredModel] = DEFAULT_METERED_MODELS,
        clock: Callable[[], datetime] = _utcnow,
        metrics: ReconciliationMetrics | None = None,
    ):
        self.store = store
        self.catalog = catalog
        self.stripe_client = stripe_client
        self.metered_models = tuple(metered_models)
        self.clock = clock
        self.metrics = metrics or get_reconciliation_metrics()

    def metered_model_for(self, model: str, mode: CompletionMode) -> MeteredModel:
        metered_model = MeteredModel(model, mode)
        if metered_model not in self.metered_models:
            raise UnsupportedModelError(
                f"usage meter for unsupported model {model!r} ({mode.value})",
                model=model,
                mode=mode.value,
            )
        return metered_model

    async def resolve_prices(self) -> list[ResolvedMeter]:
        """Look up the Stripe price of every metered model once per run."""
        resolved = []
        for metered_model in self.metered_models:
            price = await self.catalog.find_price_by_lookup_key(metered_model.price_lookup_key)
            resolved.append(ResolvedMeter(metered_model, price))
        return resolved

    async def run(self, stop_event: asyncio.Event | None = None) -> UsageSyncSummary:
        """Sync usage for every account with an active paid subscription.

        Failures of a single account are logged and counted; they do not stop
        the run. Failing to load the inputs or resolve prices raises.
        """
        started_at = self.clock()
        logger.info("usage_sync.started")

        staff_account_ids = await self.store.list_staff_account_ids()
        subscriptions = self._latest_per_account(
            await self.store.list_active_subscriptions(BILLED_SUBSCRIPTION_KINDS)
        )
        meters_by_account = self._group_meters(
            await self.store.list_current_usage_meters(started_at)
        )
        resolved = await self.resolve_prices()

        summary = UsageSyncSummary()
        for customer, subscription in subscriptions:
            if stop_event is not None and stop_event.is_set():
                summary.interrupted = True
                logger.info("usage_sync.interrupted", next_account_id=customer.account_id)
                break

            if customer.account_id in staff_account_ids:
                summary.staff_accounts_skipped += 1
                continue

            try:
                summary.usage_events_reported += await self.sync_account(
                    customer,
                    subscription,
                    meters_by_account.get(customer.account_id, {}),
                    resolved,
                )
            except Exception:
                logger.error(
                    "usage_sync.account_failed",
                    account_id=customer.account_id,
                    stripe_subscription_id=subscription.stripe_subscription_id,
                    exc_info=True,
                )
                self.metrics.record_usage_account_failed()
                summary.failed_account_ids.append(customer.account_id)
                continue

            summary.accounts_synced += 1

        logger.info(
            "usage_sync.completed",
            accounts=len(subscriptions),
            accounts_synced=summary.accounts_synced,
            accounts_failed=len(summary.failed_account_ids),
            usage_events_reported=summary.usage_events_reported,
            elapsed_seconds=(self.clock() - started_at).total_seconds(),
        )
        return summary

    async def sync_account(
        self,
        customer: BillingCustomer,
        subscription: BillingSubscription,
        requests_by_model: dict[MeteredModel, int],
        resolved: Iterable[ResolvedMeter],
    ) -> int:
        """Report every metered model for one account; returns the number of events sent."""
        reported = 0
        for meter in resolved:
            metered_model = meter.metered_model
            requests = requests_by_model.get(metered_model, 0)

            # The price is attached on first use; zero counts are still reported
            if requests > 0:
                await self.catalog.ensure_subscribed_to_price(
                    subscription.stripe_subscription_id, meter.price
                )

            try:
                await self.stripe_client.create_meter_event(
                    metered_model.meter_event_name, customer.stripe_customer_id, requests
                )
            except Exception as exc:
                raise UsageSyncError(
                    f"failed to bill {requests} requests for {customer.stripe_customer_id}: "
                    f"{metered_model.meter_event_name}",
                    context={
                        "account_id": customer.account_id,
                        "meter_event_name": metered_model.meter_event_name,
                        "requests": requests,
                    },
                ) from exc

            self.metrics.record_usage_reported(metered_model.model, metered_model.mode.value)
            reported += 1
        return reported

    @staticmethod
    def _latest_per_account(
        rows: Iterable[tuple[BillingCustomer, BillingSubscription]],
    ) -> list[tuple[BillingCustomer, BillingSubscription]]:
        """Keep one subscription per account, the most recently created one."""
        latest: dict[int, tuple[BillingCustomer, BillingSubscription]] = {}
        for customer, subscription in rows:
            current = latest.get(customer.account_id)
            if current is None or subscription.id > current[1].id:
                latest[customer.account_id] = (customer, subscription)
        return [latest[account_id] for account_id in sorted(latest)]

    def _group_meters(
        self, meters: Iterable[SubscriptionUsageMeter]
    ) -> dict[int, dict[MeteredModel, int]]:
        grouped: dict[int, dict[MeteredModel, int]] = defaultdict(dict)
        for meter in meters:
            try:
                metered_model = self.metered_model_for(meter.model, meter.mode)
            except UnsupportedModelError as exc:
                logger.warning("usage_sync.meter_ignored", account_id=meter.account_id, **exc.to_dict())
                continue
            grouped[meter.account_id].setdefault(metered_model, meter.requests)
        return grouped
