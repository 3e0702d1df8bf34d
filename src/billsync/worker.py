"""Background worker running the two reconciliation loops."""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

from billsync.billing.reconciliation import (
    EVENT_RECONCILIATION_JOB,
    USAGE_SYNC_JOB,
    ReconciliationContext,
    run_event_reconciliation_tick,
    run_usage_sync_tick,
)
from billsync.settings import Settings

logger = structlog.get_logger(__name__)

TickFunc = Callable[[ReconciliationContext, asyncio.Event | None], Awaitable[bool]]


class ReconciliationWorker:
    """Owns the event reconciliation and usage sync loops.

    Both loops share only the read-only ``context``. ``stop()`` lets an
    in-flight tick finish the event or account it is on before returning.
    """

    def __init__(self, context: ReconciliationContext, settings: Settings):
        self.context = context
        self.settings = settings
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start background tasks."""
        if self._tasks:
            return

        self._stop_event.clear()
        reconciliation = self.settings.reconciliation
        if reconciliation.event_polling_enabled:
            self._spawn(
                EVENT_RECONCILIATION_JOB,
                run_event_reconciliation_tick,
                reconciliation.poll_interval_seconds,
            )
        if reconciliation.usage_sync_enabled:
            self._spawn(
                USAGE_SYNC_JOB, run_usage_sync_tick, reconciliation.usage_sync_interval_seconds
            )
        logger.info("worker.started", jobs=sorted(task.get_name() for task in self._tasks))

    async def stop(self, timeout: float | None = None) -> None:
        """Stop background tasks, waiting up to ``timeout`` seconds for in-flight ticks."""
        self._stop_event.set()
        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            logger.warning("worker.tick_cancelled", job=task.get_name())
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("worker.stopped")

    def _spawn(self, job: str, tick: TickFunc, interval: float) -> None:
        task = asyncio.create_task(self._loop(job, tick, interval), name=job)
        self._tasks.add(task)

    async def _loop(self, job: str, tick: TickFunc, interval: float) -> None:
        logger.info("worker.loop_started", job=job, interval_seconds=interval)
        while not self._stop_event.is_set():
            try:
                success = await tick(self.context, self._stop_event)
                if not success:
                    logger.warning("worker.tick_unsuccessful", job=job)
            except Exception:
                logger.error("worker.tick_error", job=job, exc_info=True)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        logger.info("worker.loop_stopped", job=job)
