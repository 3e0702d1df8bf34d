"""
Tests for the processed-event ledger and its backing store.
"""

import pytest
from sqlalchemy import func, select

from billsync.billing.models import ProcessedStripeEvent

pytestmark = pytest.mark.integration


class TestProcessedEventLedger:
    """Membership checks and write-once recording."""

    async def test_unknown_ids_are_not_processed(self, ledger):
        assert await ledger.has_processed({"evt_1", "evt_2"}) == set()

    async def test_empty_batch(self, ledger):
        assert await ledger.has_processed(set()) == set()

    async def test_marked_ids_are_reported(self, ledger):
        await ledger.mark_processed("evt_1", "customer.created", 1_700_000_000)
        await ledger.mark_processed("evt_3", "customer.updated", 1_700_000_100)

        processed = await ledger.has_processed(["evt_1", "evt_2", "evt_3"])

        assert processed == {"evt_1", "evt_3"}

    async def test_marking_twice_is_a_noop(self, ledger, session_factory):
        await ledger.mark_processed("evt_1", "customer.created", 1_700_000_000)
        await ledger.mark_processed("evt_1", "customer.created", 1_700_000_000)

        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(ProcessedStripeEvent))
        assert count == 1

    async def test_record_keeps_type_and_created(self, ledger, session_factory):
        await ledger.mark_processed("evt_9", "customer.subscription.deleted", 1_700_000_042)

        async with session_factory() as session:
            record = await session.get(ProcessedStripeEvent, "evt_9")

        assert record.stripe_event_type == "customer.subscription.deleted"
        assert record.stripe_event_created_timestamp == 1_700_000_042
        assert record.processed_at is not None
