"""
Tests for the periodic job entry points and context wiring.
"""

import time
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from billsync.billing.exceptions import BillingConfigurationError, ProviderError
from billsync.billing.notifications import LoggingNotificationSink, WebhookNotificationSink
from billsync.billing.reconciliation import (
    build_context,
    build_notification_sink,
    run_event_reconciliation_tick,
    run_usage_sync_tick,
)
from billsync.billing.stripe_client import StripeSDKClient
from billsync.settings import Settings
from tests.fakes import make_customer, make_event, make_subscription

pytestmark = pytest.mark.integration


@pytest.fixture
def ctx(test_settings, store, stripe_client, notifications):
    return build_context(
        test_settings, store=store, stripe_client=stripe_client, notifications=notifications
    )


class TestBuildContext:
    def test_requires_stripe_api_key(self, session_factory):
        settings = Settings(environment="test", stripe={"api_key": None})

        with pytest.raises(BillingConfigurationError) as exc_info:
            build_context(settings, session_factory)
        assert exc_info.value.context == {"config_key": "STRIPE__API_KEY"}

    def test_builds_sdk_client_from_settings(self, test_settings, session_factory):
        ctx = build_context(test_settings, session_factory)

        assert isinstance(ctx.stripe_client, StripeSDKClient)
        assert isinstance(ctx.notifications, LoggingNotificationSink)

    def test_settings_flow_into_components(self, session_factory, stripe_client):
        settings = Settings(
            environment="test",
            stripe={"api_key": "sk_test", "paid_price_lookup_key": "team"},
            reconciliation={"events_page_size": 50, "stale_page_limit": 2, "event_max_age_hours": 6},
        )

        ctx = build_context(settings, session_factory, stripe_client=stripe_client)

        assert ctx.poller.page_size == 50
        assert ctx.poller.stale_page_limit == 2
        assert ctx.dispatcher.max_event_age == timedelta(hours=6)
        assert ctx.catalog.paid_price_lookup_key == "team"

    def test_metrics_named_after_service(self, session_factory, stripe_client):
        settings = Settings(environment="test", observability={"otel_service_name": "acme"})

        with patch("billsync.billing.reconciliation.get_reconciliation_metrics") as mock_metrics:
            ctx = build_context(settings, session_factory, stripe_client=stripe_client)

        mock_metrics.assert_called_once_with("acme")
        assert ctx.metrics is mock_metrics.return_value

    def test_webhook_sink_when_url_configured(self):
        settings = Settings(
            environment="test", notifications={"webhook_url": "https://hooks.example.com/x"}
        )

        assert isinstance(build_notification_sink(settings), WebhookNotificationSink)


class TestEventReconciliationTick:
    async def test_applies_unprocessed_events(self, ctx, stripe_client, store, create_account):
        account = await create_account("ada@example.com")
        now = int(time.time())
        stripe_client.events = [
            make_event("evt_2", "customer.subscription.created", now - 5, make_subscription("sub_1", "cus_1")),
            make_event("evt_1", "customer.created", now - 10, make_customer("cus_1", "ada@example.com")),
        ]

        assert await run_event_reconciliation_tick(ctx) is True

        customer = await store.get_customer_by_stripe_id("cus_1")
        assert customer.account_id == account.id
        assert await store.get_subscription_by_stripe_id("sub_1") is not None

    async def test_second_tick_does_nothing_new(self, ctx, stripe_client, create_account):
        await create_account("ada@example.com")
        stripe_client.events = [
            make_event("evt_1", "customer.created", int(time.time()), make_customer("cus_1", "ada@example.com")),
        ]
        ctx.dispatcher.handle_event = AsyncMock(wraps=ctx.dispatcher.handle_event)

        await run_event_reconciliation_tick(ctx)
        await run_event_reconciliation_tick(ctx)

        assert ctx.dispatcher.handle_event.await_count == 1

    async def test_poll_failure_fails_tick(self, ctx, stripe_client):
        stripe_client.errors["list_events"] = ProviderError("down", operation="list_events")

        assert await run_event_reconciliation_tick(ctx) is False

    async def test_event_failure_does_not_fail_tick(self, ctx, stripe_client):
        stripe_client.events = [
            make_event("evt_1", "customer.subscription.updated", int(time.time()), make_customer("cus_1")),
        ]

        assert await run_event_reconciliation_tick(ctx) is True


class TestUsageSyncTick:
    async def test_success(self, ctx):
        assert await run_usage_sync_tick(ctx) is True

    async def test_failure_to_start(self, ctx, stripe_client):
        stripe_client.errors["list_prices"] = ProviderError("down", operation="list_prices")

        assert await run_usage_sync_tick(ctx) is False

    async def test_records_tick_metrics(self, test_settings, store, stripe_client):
        metrics = MagicMock()
        ctx = build_context(test_settings, store=store, stripe_client=stripe_client, metrics=metrics)

        await run_usage_sync_tick(ctx)

        metrics.record_tick.assert_called_once()
        args, kwargs = metrics.record_tick.call_args
        assert args[0] == "usage_sync"
        assert kwargs["success"] is True
