"""
Entry points of the two periodic reconciliation jobs.

``build_context`` wires the collaborators once at process start; each tick then
derives all of its state from the store and Stripe, so a tick may run from a
cold process with the same result.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billsync.billing.catalog import PriceCatalog
from billsync.billing.dispatcher import CustomerUpsertHandler, EventDispatcher
from billsync.billing.exceptions import BillingConfigurationError
from billsync.billing.ledger import ProcessedEventLedger
from billsync.billing.metrics import ReconciliationMetrics, get_reconciliation_metrics
from billsync.billing.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from billsync.billing.poller import EventPoller
from billsync.billing.store import BillingStore, SQLAlchemyBillingStore
from billsync.billing.stripe_client import StripeClient, StripeSDKClient
from billsync.billing.synchronizer import SubscriptionSynchronizer
from billsync.billing.usage_sync import UsageSync
from billsync.settings import Settings

logger = structlog.get_logger(__name__)

EVENT_RECONCILIATION_JOB = "event_reconciliation"
USAGE_SYNC_JOB = "usage_sync"


@dataclass(frozen=True)
class ReconciliationContext:
    """Collaborators shared read-only by both jobs."""

    store: BillingStore
    stripe_client: StripeClient
    notifications: NotificationSink
    catalog: PriceCatalog
    poller: EventPoller
    dispatcher: EventDispatcher
    synchronizer: SubscriptionSynchronizer
    usage_sync: UsageSync
    metrics: ReconciliationMetrics


def build_notification_sink(settings: Settings) -> NotificationSink:
    if settings.notifications.webhook_url:
        return WebhookNotificationSink(
            settings.notifications.webhook_url,
            timeout_seconds=settings.notifications.timeout_seconds,
        )
    return LoggingNotificationSink()


def build_stripe_client(settings: Settings) -> StripeClient:
    if not settings.stripe.is_configured:
        raise BillingConfigurationError(
            "Stripe API key is not configured",
            config_key="STRIPE__API_KEY",
            recovery_hint="Set STRIPE__API_KEY to enable reconciliation",
        )
    return StripeSDKClient(
        api_key=settings.stripe.api_key or "",
        api_version=settings.stripe.api_version,
        max_network_retries=settings.stripe.max_network_retries,
    )


def build_context(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    store: BillingStore | None = None,
    stripe_client: StripeClient | None = None,
    notifications: NotificationSink | None = None,
    metrics: ReconciliationMetrics | None = None,
) -> ReconciliationContext:
    """Wire the reconciliation components from settings.

    Raises:
        BillingConfigurationError: No Stripe client was given and none can be
            built from settings.
    """
    if store is None:
        if session_factory is None:
            raise ValueError("session_factory or store is required")
        store = SQLAlchemyBillingStore(session_factory)
    stripe_client = stripe_client or build_stripe_client(settings)
    notifications = notifications or build_notification_sink(settings)
    metrics = metrics or get_reconciliation_metrics(settings.observability.otel_service_name)

    ledger = ProcessedEventLedger(store)
    catalog = PriceCatalog(
        stripe_client,
        free_price_lookup_key=settings.stripe.free_price_lookup_key,
        paid_price_lookup_key=settings.stripe.paid_price_lookup_key,
    )
    synchronizer = SubscriptionSynchronizer(store, stripe_client, catalog)
    reconciliation = settings.reconciliation

    return ReconciliationContext(
        store=store,
        stripe_client=stripe_client,
        notifications=notifications,
        catalog=catalog,
        poller=EventPoller(
            stripe_client,
            ledger,
            page_size=reconciliation.events_page_size,
            stale_page_limit=reconciliation.stale_page_limit,
        ),
        dispatcher=EventDispatcher(
            ledger,
            CustomerUpsertHandler(store),
            synchronizer,
            notifications,
            max_event_age=timedelta(hours=reconciliation.event_max_age_hours),
            metrics=metrics,
        ),
        synchronizer=synchronizer,
        usage_sync=UsageSync(store, catalog, stripe_client, metrics=metrics),
        metrics=metrics,
    )


async def run_event_reconciliation_tick(
    ctx: ReconciliationContext, stop_event: asyncio.Event | None = None
) -> bool:
    """Poll Stripe events once and apply the unprocessed ones.

    Returns False when the tick could not complete (for example, the event
    list could not be fetched). Failures of individual events are logged and
    counted but do not fail the tick; those events are retried next tick.
    """
    started = time.perf_counter()
    try:
        events = await ctx.poller.fetch_unprocessed_events()
        summary = await ctx.dispatcher.dispatch(events, stop_event=stop_event)
    except Exception:
        logger.error("event_reconciliation.tick_failed", exc_info=True)
        ctx.metrics.record_tick(
            EVENT_RECONCILIATION_JOB, (time.perf_counter() - started) * 1000, success=False
        )
        return False

    ctx.metrics.record_tick(
        EVENT_RECONCILIATION_JOB, (time.perf_counter() - started) * 1000, success=True
    )
    if events:
        logger.info(
            "event_reconciliation.tick_completed",
            processed=summary.processed,
            stale=summary.stale,
            failed=summary.failed,
            interrupted=summary.interrupted,
        )
    return True


async def run_usage_sync_tick(
    ctx: ReconciliationContext, stop_event: asyncio.Event | None = None
) -> bool:
    """Run the usage-to-billing sync once.

    Returns False when the run could not start or finish (store or price
    lookups failing). Failures of single accounts do not fail the tick.
    """
    started = time.perf_counter()
    try:
        await ctx.usage_sync.run(stop_event=stop_event)
    except Exception:
        logger.error("usage_sync.tick_failed", exc_info=True)
        ctx.metrics.record_tick(USAGE_SYNC_JOB, (time.perf_counter() - started) * 1000, success=False)
        return False

    ctx.metrics.record_tick(USAGE_SYNC_JOB, (time.perf_counter() - started) * 1000, success=True)
    return True
