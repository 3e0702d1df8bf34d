"""
Notification sinks for reconciliation side effects.

After a subscription changes, the rest of the system is told to push the new
plan to the account and to refresh the account's credentials. Delivery is
best-effort: callers log failures and carry on.
"""

from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


class NotificationSink(Protocol):
    async def notify_plan_changed(self, account_id: int) -> None: ...

    async def notify_refresh_credentials(self, account_id: int) -> None: ...


class LoggingNotificationSink:
    """Emits notifications as structured log entries only."""

    async def notify_plan_changed(self, account_id: int) -> None:
        logger.info("notification.plan_changed", account_id=account_id)

    async def notify_refresh_credentials(self, account_id: int) -> None:
        logger.info("notification.refresh_credentials", account_id=account_id)


class WebhookNotificationSink:
    """POSTs notifications as JSON to an HTTP endpoint."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _post(self, notification: str, account_id: int) -> None:
        payload = {"type": notification, "account_id": account_id}
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()
        logger.debug("notification.delivered", type=notification, account_id=account_id)

    async def notify_plan_changed(self, account_id: int) -> None:
        await self._post("plan_changed", account_id)

    async def notify_refresh_credentials(self, account_id: int) -> None:
        await self._post("refresh_credentials", account_id)
