#!/usr/bin/env python
"""
CLI management commands for the billsync reconciliation engine.
"""

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import click
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billsync.billing.exceptions import BillingError
from billsync.billing.reconciliation import (
    ReconciliationContext,
    build_context,
    run_event_reconciliation_tick,
    run_usage_sync_tick,
)
from billsync.db import (
    create_all_tables,
    create_engine_from_settings,
    create_session_factory,
    drop_all_tables,
)
from billsync.logging import setup_logging
from billsync.settings import Settings, get_settings
from billsync.worker import ReconciliationWorker

TickFunc = Callable[[ReconciliationContext], Awaitable[bool]]


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings_factory: Callable[[], Settings]
    setup_logging: Callable[[Settings], None]
    engine_factory: Callable[[Settings], AsyncEngine]
    session_factory: Callable[[AsyncEngine], async_sessionmaker[AsyncSession]]
    context_factory: Callable[..., ReconciliationContext]
    create_tables: Callable[[AsyncEngine], Awaitable[None]]
    drop_tables: Callable[[AsyncEngine], Awaitable[None]]
    event_tick: TickFunc
    usage_tick: TickFunc
    worker_cls: type


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        settings_factory=get_settings,
        setup_logging=setup_logging,
        engine_factory=create_engine_from_settings,
        session_factory=create_session_factory,
        context_factory=build_context,
        create_tables=create_all_tables,
        drop_tables=drop_all_tables,
        event_tick=run_event_reconciliation_tick,
        usage_tick=run_usage_sync_tick,
        worker_cls=ReconciliationWorker,
    )


async def _with_context(
    deps: CLIDependencies, action: Callable[[ReconciliationContext, Settings], Awaitable[Any]]
) -> Any:
    """Build the reconciliation context, run ``action`` and dispose the engine."""
    settings = deps.settings_factory()
    deps.setup_logging(settings)
    engine = deps.engine_factory(settings)
    try:
        ctx = deps.context_factory(settings, deps.session_factory(engine))
        return await action(ctx, settings)
    finally:
        await engine.dispose()


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def cli() -> None:
    """billsync reconciliation engine CLI."""
    pass


@cli.command()
@click.option("--drop-existing", is_flag=True, help="Drop the reconciliation tables first")
def init_db(drop_existing: bool) -> None:
    """Create the reconciliation tables."""
    deps = _get_cli_dependencies()

    async def _init() -> None:
        settings = deps.settings_factory()
        engine = deps.engine_factory(settings)
        try:
            if drop_existing:
                await deps.drop_tables(engine)
            await deps.create_tables(engine)
        finally:
            await engine.dispose()

    click.echo("Initializing database...")
    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command()
def poll_events() -> None:
    """Poll Stripe events once and apply the unprocessed ones."""
    deps = _get_cli_dependencies()

    async def _tick(ctx: ReconciliationContext, settings: Settings) -> bool:
        return await deps.event_tick(ctx)

    try:
        ok = asyncio.run(_with_context(deps, _tick))
    except BillingError as exc:
        _fail(f"Event reconciliation not started: {exc.message}")
        return

    if not ok:
        _fail("Event reconciliation tick failed")
    click.echo("Event reconciliation tick completed")


@cli.command()
def sync_usage() -> None:
    """Report current-period usage to Stripe once."""
    deps = _get_cli_dependencies()

    async def _tick(ctx: ReconciliationContext, settings: Settings) -> bool:
        return await deps.usage_tick(ctx)

    try:
        ok = asyncio.run(_with_context(deps, _tick))
    except BillingError as exc:
        _fail(f"Usage sync not started: {exc.message}")
        return

    if not ok:
        _fail("Usage sync tick failed")
    click.echo("Usage sync tick completed")


@cli.command()
@click.argument("email")
def sync_customer(email: str) -> None:
    """Re-apply every Stripe subscription of the account with EMAIL."""
    deps = _get_cli_dependencies()

    async def _sync(ctx: ReconciliationContext, settings: Settings) -> str:
        customer = await ctx.synchronizer.sync_customer_subscriptions(email=email)
        return customer.stripe_customer_id

    try:
        stripe_customer_id = asyncio.run(_with_context(deps, _sync))
    except BillingError as exc:
        _fail(f"Sync failed for {email}: {exc.message}")
        return

    click.echo(f"Synced subscriptions of {email} (Stripe customer {stripe_customer_id})")


@cli.command()
def worker() -> None:
    """Run the reconciliation loops until interrupted."""
    deps = _get_cli_dependencies()

    async def _run(ctx: ReconciliationContext, settings: Settings) -> None:
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

        runner = deps.worker_cls(ctx, settings)
        await runner.start()
        click.echo("Worker started, press Ctrl+C to stop")
        try:
            await shutdown.wait()
        finally:
            await runner.stop()

    try:
        asyncio.run(_with_context(deps, _run))
    except BillingError as exc:
        _fail(f"Worker not started: {exc.message}")
        return
    click.echo("Worker stopped")


if __name__ == "__main__":
    cli()
