"""
Tests for the subscription synchronizer.
"""

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from billsync.billing.enums import (
    CancellationReason,
    SubscriptionKind,
    SubscriptionStatus,
)
from billsync.billing.exceptions import BillingCustomerNotFoundError, SubscriptionSyncError
from billsync.billing.schemas import StripeSubscription
from tests.fakes import PERIOD_START, make_customer, make_subscription

pytestmark = pytest.mark.integration

TRIAL_END = PERIOD_START + 14 * 86_400


def snapshot(subscription_id: str = "sub_1", customer: str = "cus_1", **kwargs) -> StripeSubscription:
    return StripeSubscription.model_validate(make_subscription(subscription_id, customer, **kwargs))


@pytest_asyncio.fixture
async def account(create_account):
    return await create_account("ada@example.com")


@pytest_asyncio.fixture
async def customer(store, account):
    return await store.create_customer(account.id, "cus_1")


class TestFindOrCreateCustomer:
    async def test_existing_customer_is_returned(self, synchronizer, stripe_client, customer):
        found = await synchronizer.find_or_create_customer("cus_1")

        assert found.id == customer.id
        assert stripe_client.get_customer_calls == []

    async def test_unknown_customer_is_bound_by_email(
        self, synchronizer, stripe_client, store, account
    ):
        stripe_client.customers["cus_1"] = make_customer("cus_1", "ada@example.com")

        created = await synchronizer.find_or_create_customer("cus_1")

        assert created.account_id == account.id
        assert (await store.get_customer_by_stripe_id("cus_1")).id == created.id

    async def test_customer_without_email(self, synchronizer, stripe_client, account):
        stripe_client.customers["cus_1"] = make_customer("cus_1", None)

        with pytest.raises(BillingCustomerNotFoundError):
            await synchronizer.find_or_create_customer("cus_1")

    async def test_customer_without_account(self, synchronizer, stripe_client):
        stripe_client.customers["cus_1"] = make_customer("cus_1", "nobody@example.com")

        with pytest.raises(BillingCustomerNotFoundError):
            await synchronizer.find_or_create_customer("cus_1")

    async def test_account_bound_to_other_customer(self, synchronizer, stripe_client, customer):
        stripe_client.customers["cus_2"] = make_customer("cus_2", "ada@example.com")

        with pytest.raises(BillingCustomerNotFoundError) as exc_info:
            await synchronizer.find_or_create_customer("cus_2")
        assert exc_info.value.context["account_id"] == customer.account_id


class TestSyncSubscription:
    async def test_creates_subscription_row(self, synchronizer, store, customer):
        result = await synchronizer.sync_subscription(snapshot(cancel_at=PERIOD_START + 100))

        row = await store.get_subscription_by_stripe_id("sub_1")
        assert result.id == customer.id
        assert row.billing_customer_id == customer.id
        assert row.kind == SubscriptionKind.BASE_PAID
        assert row.stripe_subscription_status == SubscriptionStatus.ACTIVE
        assert row.stripe_current_period_start == PERIOD_START
        assert row.stripe_cancel_at.replace(tzinfo=UTC) == datetime.fromtimestamp(
            PERIOD_START + 100, tz=UTC
        )

    async def test_replay_converges(self, synchronizer, store, customer):
        subscription = snapshot(status="past_due")

        await synchronizer.sync_subscription(subscription)
        first = await store.get_subscription_by_stripe_id("sub_1")
        await synchronizer.sync_subscription(subscription)
        second = await store.get_subscription_by_stripe_id("sub_1")

        assert second.id == first.id
        assert (
            second.kind,
            second.stripe_subscription_status,
            second.stripe_current_period_start,
            second.stripe_current_period_end,
        ) == (
            first.kind,
            first.stripe_subscription_status,
            first.stripe_current_period_start,
            first.stripe_current_period_end,
        )

    async def test_existing_row_is_updated(self, synchronizer, store, customer):
        await synchronizer.sync_subscription(snapshot(status="active"))

        await synchronizer.sync_subscription(
            snapshot(status="past_due", period_start=PERIOD_START + 10)
        )

        row = await store.get_subscription_by_stripe_id("sub_1")
        assert row.stripe_subscription_status == SubscriptionStatus.PAST_DUE
        assert row.stripe_current_period_start == PERIOD_START + 10

    async def test_unresolvable_customer_fails(self, synchronizer, stripe_client):
        stripe_client.customers["cus_9"] = make_customer("cus_9", "ghost@example.com")

        with pytest.raises(BillingCustomerNotFoundError):
            await synchronizer.sync_subscription(snapshot(customer="cus_9"))


class TestTrialBookkeeping:
    async def test_trial_start_is_recorded(self, synchronizer, store, customer):
        result = await synchronizer.sync_subscription(
            snapshot(status="trialing", trial_end=TRIAL_END)
        )

        expected = datetime.fromtimestamp(PERIOD_START, tz=UTC)
        assert result.trial_started_at.replace(tzinfo=UTC) == expected
        stored = await store.get_customer_by_stripe_id("cus_1")
        assert stored.trial_started_at.replace(tzinfo=UTC) == expected
        row = await store.get_subscription_by_stripe_id("sub_1")
        assert row.kind == SubscriptionKind.TRIAL

    async def test_trial_start_is_never_overwritten(self, synchronizer, store, customer):
        original = datetime(2024, 1, 1, tzinfo=UTC)
        await store.update_customer(customer.id, trial_started_at=original)

        await synchronizer.sync_subscription(
            snapshot("sub_2", status="trialing", trial_end=TRIAL_END)
        )

        stored = await store.get_customer_by_stripe_id("cus_1")
        assert stored.trial_started_at.replace(tzinfo=UTC) == original

    async def test_trial_without_period_start_fails(self, synchronizer, customer):
        with pytest.raises(SubscriptionSyncError):
            await synchronizer.sync_subscription(
                snapshot(status="trialing", trial_end=TRIAL_END, period_start=None)
            )

    async def test_active_trial_kind_does_not_record_start(self, synchronizer, store, customer):
        await synchronizer.sync_subscription(snapshot(status="active", trial_end=TRIAL_END))

        stored = await store.get_customer_by_stripe_id("cus_1")
        assert stored.trial_started_at is None


class TestPaymentFailure:
    async def test_payment_failed_cancellation_flags_customer(
        self, synchronizer, store, customer
    ):
        await synchronizer.sync_subscription(snapshot(status="active"))

        await synchronizer.sync_subscription(
            snapshot(status="canceled", cancellation_reason="payment_failed")
        )

        stored = await store.get_customer_by_stripe_id("cus_1")
        assert stored.has_overdue_invoices is True
        row = await store.get_subscription_by_stripe_id("sub_1")
        assert row.stripe_cancellation_reason == CancellationReason.PAYMENT_FAILED

    async def test_requested_cancellation_does_not_flag(self, synchronizer, store, customer):
        await synchronizer.sync_subscription(
            snapshot(status="canceled", cancellation_reason="cancellation_requested")
        )

        stored = await store.get_customer_by_stripe_id("cus_1")
        assert stored.has_overdue_invoices is False


class TestActiveSubscriptionConflicts:
    async def test_free_to_trial_upgrade(self, synchronizer, store, stripe_client, customer, account):
        free = stripe_client.add_subscription(make_subscription("sub_free", "cus_1", lookup_key="free"))
        await synchronizer.sync_subscription(StripeSubscription.model_validate(free))

        await synchronizer.sync_subscription(
            snapshot("sub_trial", status="trialing", trial_end=TRIAL_END)
        )

        assert stripe_client.canceled == ["sub_free"]
        free_row = await store.get_subscription_by_stripe_id("sub_free")
        assert free_row.stripe_subscription_status == SubscriptionStatus.CANCELED
        active = await store.get_active_subscription(account.id)
        assert active.stripe_subscription_id == "sub_trial"
        assert active.kind == SubscriptionKind.TRIAL
        rows = await store.list_active_subscriptions(list(SubscriptionKind))
        assert [sub.stripe_subscription_id for _, sub in rows] == ["sub_trial"]

    async def test_upgrade_then_free_deletion_event_does_not_reenroll(
        self, synchronizer, stripe_client, customer
    ):
        free = stripe_client.add_subscription(make_subscription("sub_free", "cus_1", lookup_key="free"))
        await synchronizer.sync_subscription(StripeSubscription.model_validate(free))
        await synchronizer.sync_subscription(
            snapshot("sub_trial", status="trialing", trial_end=TRIAL_END)
        )

        await synchronizer.sync_subscription(
            snapshot("sub_free", status="canceled", lookup_key="free")
        )

        assert stripe_client.created_subscriptions == []

    async def test_second_paid_subscription_is_skipped(
        self, synchronizer, store, stripe_client, customer
    ):
        await synchronizer.sync_subscription(snapshot("sub_paid"))

        result = await synchronizer.sync_subscription(snapshot("sub_other"))

        assert result.id == customer.id
        assert await store.get_subscription_by_stripe_id("sub_other") is None
        assert stripe_client.canceled == []

    async def test_free_to_paid_is_skipped(self, synchronizer, store, stripe_client, customer):
        await synchronizer.sync_subscription(snapshot("sub_free", lookup_key="free"))

        await synchronizer.sync_subscription(snapshot("sub_paid", lookup_key="pro"))

        assert await store.get_subscription_by_stripe_id("sub_paid") is None
        assert stripe_client.canceled == []


class TestFreePlanFallback:
    async def test_cancellation_enrolls_free_plan(self, synchronizer, stripe_client, customer):
        await synchronizer.sync_subscription(snapshot("sub_paid"))

        await synchronizer.sync_subscription(snapshot("sub_paid", status="canceled"))

        assert stripe_client.created_subscriptions == [("cus_1", "price_free")]

    async def test_pause_enrolls_free_plan(self, synchronizer, stripe_client, customer):
        await synchronizer.sync_subscription(snapshot("sub_paid"))

        await synchronizer.sync_subscription(snapshot("sub_paid", status="paused"))

        assert stripe_client.created_subscriptions == [("cus_1", "price_free")]

    async def test_replayed_cancellation_does_not_stack_free_plans(
        self, synchronizer, stripe_client, customer
    ):
        await synchronizer.sync_subscription(snapshot("sub_paid"))
        canceled = snapshot("sub_paid", status="canceled")

        await synchronizer.sync_subscription(canceled)
        await synchronizer.sync_subscription(canceled)

        assert len(stripe_client.created_subscriptions) == 1

    async def test_active_update_does_not_enroll(self, synchronizer, stripe_client, customer):
        await synchronizer.sync_subscription(snapshot("sub_paid", status="past_due"))

        assert stripe_client.created_subscriptions == []


class TestSyncCustomerSubscriptions:
    async def test_resyncs_all_provider_subscriptions(
        self, synchronizer, store, stripe_client, customer, account
    ):
        stripe_client.add_subscription(
            make_subscription("sub_old", "cus_1", status="canceled", lookup_key="free")
        )
        stripe_client.add_subscription(make_subscription("sub_paid", "cus_1"))

        result = await synchronizer.sync_customer_subscriptions(email="ada@example.com")

        assert result.stripe_customer_id == "cus_1"
        assert (await store.get_subscription_by_stripe_id("sub_old")) is not None
        active = await store.get_active_subscription(account.id)
        assert active.stripe_subscription_id == "sub_paid"

    async def test_account_without_customer(self, synchronizer, account):
        with pytest.raises(BillingCustomerNotFoundError):
            await synchronizer.sync_customer_subscriptions(account_id=account.id)

    async def test_unknown_email(self, synchronizer):
        with pytest.raises(BillingCustomerNotFoundError):
            await synchronizer.sync_customer_subscriptions(email="nobody@example.com")

    async def test_failure_names_subscription(self, synchronizer, stripe_client, customer):
        stripe_client.add_subscription(make_subscription("sub_bad", "cus_1", status="canceled"))
        stripe_client.errors["list_prices"] = RuntimeError("stripe down")

        with pytest.raises(SubscriptionSyncError) as exc_info:
            await synchronizer.sync_customer_subscriptions(email="ada@example.com")
        assert exc_info.value.context["stripe_subscription_id"] == "sub_bad"
