"""
Best-effort billing notifications.

Delivered after the event's state change has committed; a failed delivery is
logged and reported, never raised.
"""

from datetime import UTC, datetime

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.billing_domain import NotificationOutcome

logger = get_logger(__name__)

PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_CANCELED = "subscription_canceled"
RETENTION_STARTED = "retention_started"
REACTIVATED = "reactivated"

NOTIFICATION_TIMEOUT = httpx.Timeout(5.0)


class NotificationSender:
    def __init__(self, url: str | None = None, client: httpx.AsyncClient | None = None):
        self._url = url if url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def _post(self, body: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self._url, json=body)
        async with httpx.AsyncClient(timeout=NOTIFICATION_TIMEOUT) as client:
            return await client.post(self._url, json=body)

    async def send(self, kind: str, tenant_id: str, payload: dict | None = None) -> NotificationOutcome:
        if not self.enabled:
            logger.debug("Notification sink not configured", kind=kind, tenant_id=tenant_id)
            return NotificationOutcome(kind=kind, delivered=False, error="not_configured")

        body = {
            "kind": kind,
            "tenant_id": tenant_id,
            "sent_at": datetime.now(UTC).isoformat(),
            "data": payload or {},
        }
        try:
            response = await self._post(body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Notification delivery failed",
                kind=kind,
                tenant_id=tenant_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return NotificationOutcome(kind=kind, delivered=False, error=str(e))

        logger.info("Notification delivered", kind=kind, tenant_id=tenant_id)
        return NotificationOutcome(kind=kind, delivered=True)


notification_sender = NotificationSender()
