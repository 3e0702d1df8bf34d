"""
Shared fixtures for billsync tests.

Every test gets its own in-memory SQLite database with the full schema, a fake
Stripe client preloaded with the plan and metered prices, and a recording
notification sink.
"""

from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billsync.billing.catalog import PriceCatalog
from billsync.billing.ledger import ProcessedEventLedger
from billsync.billing.models import Account
from billsync.billing.store import SQLAlchemyBillingStore
from billsync.billing.synchronizer import SubscriptionSynchronizer
from billsync.billing.usage_sync import DEFAULT_METERED_MODELS
from billsync.db import create_all_tables, create_session_factory, drop_all_tables, session_scope
from billsync.settings import Settings, reset_settings
from tests.fakes import FakeStripeClient, RecordingNotificationSink


@pytest.fixture(autouse=True)
def _reset_settings():
    reset_settings()
    yield
    reset_settings()


@pytest_asyncio.fixture
async def async_db_engine() -> AsyncIterator[AsyncEngine]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Required for SQLite in-memory async
    )
    await create_all_tables(engine)
    try:
        yield engine
    finally:
        await drop_all_tables(engine)
        await engine.dispose()


@pytest.fixture
def session_factory(async_db_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_db_engine)


@pytest.fixture
def store(session_factory) -> SQLAlchemyBillingStore:
    return SQLAlchemyBillingStore(session_factory)


@pytest.fixture
def ledger(store) -> ProcessedEventLedger:
    return ProcessedEventLedger(store)


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    client = FakeStripeClient()
    client.add_price("free")
    client.add_price("pro")
    for metered_model in DEFAULT_METERED_MODELS:
        client.add_price(metered_model.price_lookup_key)
    return client


@pytest.fixture
def catalog(stripe_client) -> PriceCatalog:
    return PriceCatalog(stripe_client, free_price_lookup_key="free", paid_price_lookup_key="pro")


@pytest.fixture
def synchronizer(store, stripe_client, catalog) -> SubscriptionSynchronizer:
    return SubscriptionSynchronizer(store, stripe_client, catalog)


@pytest.fixture
def notifications() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="test",
        stripe={"api_key": "sk_test_123"},
        database={"url": "sqlite+aiosqlite:///:memory:"},
    )


@pytest.fixture
def create_account(session_factory) -> Callable[..., Awaitable[Account]]:
    """Insert a local account row."""

    async def _create(email: str, is_staff: bool = False) -> Account:
        account = Account(email=email, is_staff=is_staff)
        async with session_scope(session_factory) as session:
            session.add(account)
        return account

    return _create
