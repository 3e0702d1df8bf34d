"""
Reconciliation metrics
"""

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, Meter


class ReconciliationMetrics:
    """Reconciliation metrics collector.

    Instruments come from the globally configured meter provider; without an
    OpenTelemetry SDK installed they record nothing.
    """

    def __init__(self, meter: Meter | None = None, service_name: str = "billsync") -> None:
        self.meter = meter or metrics.get_meter(f"{service_name}.billing")

        # Event metrics
        self.events_processed_counter: Counter = self.meter.create_counter(
            name="billsync.events.processed",
            description="Stripe events handled and recorded in the ledger",
        )
        self.events_failed_counter: Counter = self.meter.create_counter(
            name="billsync.events.failed",
            description="Stripe events whose handler failed",
        )
        self.events_stale_counter: Counter = self.meter.create_counter(
            name="billsync.events.stale",
            description="Stripe events skipped for being older than the staleness horizon",
        )

        # Usage metrics
        self.usage_reported_counter: Counter = self.meter.create_counter(
            name="billsync.usage.reported",
            description="Metered usage events reported to Stripe",
        )
        self.usage_failed_accounts_counter: Counter = self.meter.create_counter(
            name="billsync.usage.failed_accounts",
            description="Accounts whose usage sync failed",
        )

        # Tick metrics
        self.tick_duration_histogram: Histogram = self.meter.create_histogram(
            name="billsync.tick.duration",
            description="Duration of one reconciliation tick",
            unit="ms",
        )

    def record_event_processed(self, event_type: str) -> None:
        self.events_processed_counter.add(1, {"event_type": event_type})

    def record_event_failed(self, event_type: str) -> None:
        self.events_failed_counter.add(1, {"event_type": event_type})

    def record_event_stale(self, event_type: str) -> None:
        self.events_stale_counter.add(1, {"event_type": event_type})

    def record_usage_reported(self, model: str, mode: str) -> None:
        self.usage_reported_counter.add(1, {"model": model, "mode": mode})

    def record_usage_account_failed(self) -> None:
        self.usage_failed_accounts_counter.add(1)

    def record_tick(self, job: str, duration_ms: float, success: bool) -> None:
        """Record tick duration labelled by job name and outcome"""
        self.tick_duration_histogram.record(duration_ms, {"job": job, "success": success})


# Global metrics instance
_metrics: ReconciliationMetrics | None = None


def get_reconciliation_metrics(service_name: str = "billsync") -> ReconciliationMetrics:
    """Get global reconciliation metrics instance"""
    global _metrics
    if _metrics is None:
        _metrics = ReconciliationMetrics(service_name=service_name)
    return _metrics
