"""
Processed-event ledger.

Append-only record of Stripe event IDs that have been applied. Presence of an
ID means the event must never be applied again; absence means it may be
applied (again). Entries are written only after their handler succeeded, so a
crash in between costs one harmless re-application on the next poll.
"""

from collections.abc import Iterable

import structlog

from billsync.billing.store import BillingStore

logger = structlog.get_logger(__name__)


class ProcessedEventLedger:
    """Idempotency boundary for event handling."""

    def __init__(self, store: BillingStore):
        self.store = store

    async def has_processed(self, event_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``event_ids`` already recorded, in one store call."""
        return await self.store.get_processed_event_ids(set(event_ids))

    async def mark_processed(self, event_id: str, event_type: str, created_at: int) -> None:
        """Record an event as applied. Recording the same ID twice is a no-op."""
        inserted = await self.store.create_processed_event(event_id, event_type, created_at)
        if inserted:
            logger.debug("stripe_event.marked_processed", event_id=event_id, event_type=event_type)
