"""
Stripe event dispatcher.

Events are handled one at a time in the order the poller returns them. An
event is recorded in the ledger only after its handler succeeded; a failed
event is left unrecorded so the next poll retries it, and the rest of the batch
is still processed.
"""

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from billsync.billing.ledger import ProcessedEventLedger
from billsync.billing.metrics import ReconciliationMetrics, get_reconciliation_metrics
from billsync.billing.notifications import NotificationSink
from billsync.billing.schemas import StripeCustomer, StripeEvent
from billsync.billing.store import BillingStore
from billsync.billing.synchronizer import SubscriptionSynchronizer

logger = structlog.get_logger(__name__)

DEFAULT_MAX_EVENT_AGE = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class DispatchSummary:
    """Outcome of dispatching one batch of events."""

    processed: int = 0
    stale: int = 0
    failed_event_ids: list[str] = field(default_factory=list)
    interrupted: bool = False

    @property
    def failed(self) -> int:
        return len(self.failed_event_ids)


class CustomerUpsertHandler:
    """Binds Stripe customers to local accounts by email address."""

    def __init__(self, store: BillingStore):
        self.store = store

    async def handle(self, stripe_customer: StripeCustomer) -> None:
        log = logger.bind(stripe_customer_id=stripe_customer.id)

        if not stripe_customer.email:
            log.info("stripe_customer.skipped", reason="no_email")
            return

        account = await self.store.get_account_by_email(stripe_customer.email)
        if account is None:
            log.info("stripe_customer.skipped", reason="no_account")
            return

        existing = await self.store.get_customer_by_stripe_id(stripe_customer.id)
        if existing is not None:
            # Customer identity fields are not expected to change; nothing to refresh
            log.debug("stripe_customer.refreshed", billing_customer_id=existing.id)
            return

        bound = await self.store.get_customer_by_account_id(account.id)
        if bound is not None:
            log.warning(
                "stripe_customer.skipped",
                reason="account_bound_to_other_customer",
                account_id=account.id,
                bound_stripe_customer_id=bound.stripe_customer_id,
            )
            return

        await self.store.create_customer(account.id, stripe_customer.id)


class EventDispatcher:
    """Routes events to their handlers and records them in the ledger."""

    def __init__(
        self,
        ledger: ProcessedEventLedger,
        customer_handler: CustomerUpsertHandler,
        synchronizer: SubscriptionSynchronizer,
        notifications: NotificationSink,
        max_event_age: timedelta = DEFAULT_MAX_EVENT_AGE,
        clock: Callable[[], datetime] = _utcnow,
        metrics: ReconciliationMetrics | None = None,
    ):
        self.ledger = ledger
        self.customer_handler = customer_handler
        self.synchronizer = synchronizer
        self.notifications = notifications
        self.max_event_age = max_event_age
        self.clock = clock
        self.metrics = metrics or get_reconciliation_metrics()

    async def dispatch(
        self, events: Iterable[StripeEvent], stop_event: asyncio.Event | None = None
    ) -> DispatchSummary:
        """Handle ``events`` sequentially.

        When ``stop_event`` is set, the event in flight is finished and the
        remaining events are left for the next poll.
        """
        summary = DispatchSummary()
        for event in events:
            if stop_event is not None and stop_event.is_set():
                summary.interrupted = True
                logger.info("stripe_events.dispatch_interrupted", next_event_id=event.id)
                break

            log = logger.bind(event_id=event.id, event_type=event.type)
            try:
                if self._is_stale(event):
                    log.info("stripe_event.stale_skipped", created=event.created)
                    await self.ledger.mark_processed(event.id, event.type, event.created)
                    self.metrics.record_event_stale(event.type)
                    summary.stale += 1
                    continue

                await self.handle_event(event)
                await self.ledger.mark_processed(event.id, event.type, event.created)
            except Exception:
                log.error("stripe_event.handling_failed", exc_info=True)
                self.metrics.record_event_failed(event.type)
                summary.failed_event_ids.append(event.id)
                continue

            self.metrics.record_event_processed(event.type)
            summary.processed += 1

        return summary

    async def handle_event(self, event: StripeEvent) -> None:
        """Apply a single event without touching the ledger."""
        event_type = event.event_type
        if event_type is None:
            logger.debug("stripe_event.ignored", event_id=event.id, event_type=event.type)
            return

        logger.info("stripe_event.handling", event_id=event.id, event_type=event_type.value)
        if event_type.is_customer_event:
            await self.customer_handler.handle(event.customer_payload())
        elif event_type.is_subscription_event:
            customer = await self.synchronizer.sync_subscription(event.subscription_payload())
            await self._notify(customer.account_id)

    async def _notify(self, account_id: int) -> None:
        """Best-effort downstream notifications; failures are logged only."""
        try:
            await self.notifications.notify_plan_changed(account_id)
        except Exception:
            logger.warning("notification.plan_changed_failed", account_id=account_id, exc_info=True)

        try:
            await self.notifications.notify_refresh_credentials(account_id)
        except Exception:
            logger.warning(
                "notification.refresh_credentials_failed", account_id=account_id, exc_info=True
            )

    def _is_stale(self, event: StripeEvent) -> bool:
        created_at = datetime.fromtimestamp(event.created, tz=UTC)
        return self.clock() - created_at > self.max_event_age
