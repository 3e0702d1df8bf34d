"""
Stripe event poller.

Walks the Stripe event log newest-first and collects every event the ledger has
not seen yet. Pagination ends when Stripe has no more pages, or once more than
``stale_page_limit`` consecutive pages contained only already-processed events.
"""

from collections.abc import Iterable

import structlog

from billsync.billing.enums import StripeEventType
from billsync.billing.ledger import ProcessedEventLedger
from billsync.billing.schemas import StripeEvent
from billsync.billing.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

DEFAULT_EVENT_TYPES: tuple[StripeEventType, ...] = tuple(StripeEventType)


def order_events(events: Iterable[StripeEvent]) -> list[StripeEvent]:
    """Sort events by creation time, breaking ties on event ID."""
    return sorted(events, key=lambda event: (event.created, event.id))


class EventPoller:
    """Fetches the batch of unprocessed events for one reconciliation tick."""

    def __init__(
        self,
        stripe_client: StripeClient,
        ledger: ProcessedEventLedger,
        event_types: Iterable[StripeEventType] = DEFAULT_EVENT_TYPES,
        page_size: int = 100,
        stale_page_limit: int = 4,
    ):
        self.stripe_client = stripe_client
        self.ledger = ledger
        self.event_types = [event_type.value for event_type in event_types]
        self.page_size = page_size
        self.stale_page_limit = stale_page_limit

    async def fetch_unprocessed_events(self) -> list[StripeEvent]:
        """Return unprocessed events ordered by ``(created, id)``.

        Nothing is carried over between calls: the stale-page count starts at
        zero and the ledger is consulted afresh for every page.
        """
        unprocessed: dict[str, StripeEvent] = {}
        consecutive_stale_pages = 0
        pages_fetched = 0
        starting_after: str | None = None

        while True:
            page = await self.stripe_client.list_events(
                self.event_types, self.page_size, starting_after=starting_after
            )
            pages_fetched += 1

            page_ids = {event.id for event in page.data}
            processed_ids = await self.ledger.has_processed(page_ids)

            new_events = [event for event in page.data if event.id not in processed_ids]
            for event in new_events:
                unprocessed.setdefault(event.id, event)

            if page.data and not new_events:
                consecutive_stale_pages += 1
            else:
                consecutive_stale_pages = 0

            if consecutive_stale_pages > self.stale_page_limit:
                logger.debug(
                    "stripe_events.pagination_stopped",
                    reason="stale_pages",
                    pages_fetched=pages_fetched,
                )
                break

            starting_after = page.next_page_token
            if starting_after is None:
                break

        events = order_events(unprocessed.values())
        logger.info(
            "stripe_events.polled",
            pages_fetched=pages_fetched,
            unprocessed_count=len(events),
        )
        return events
