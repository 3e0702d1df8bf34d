"""
billsync - Stripe reconciliation engine.

Keeps local billing customers and subscriptions in step with Stripe:
- Polls the Stripe event log and applies unprocessed events idempotently
- Reconciles subscription snapshots (trials, cancellations, free-plan fallback)
- Mirrors per-model request usage to Stripe as metered billing events
"""

__version__ = "1.0.0"
