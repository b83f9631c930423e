"""Buyer delivery notifications.

Rendering and sending email is someone else's job; delivery only hands a
structured payload to a ``Notifier``. A failing notifier is reported back to
the caller and never undoes a fulfilment.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from digivault.core.errors import NotificationError
from digivault.core.settings import settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, recipient: str, payload: Dict[str, Any]) -> None: ...


class LogNotifier:
    """Default notifier: records the delivery in the application log."""

    def send(self, recipient: str, payload: Dict[str, Any]) -> None:
        product = payload.get("product", {})
        logger.info(
            "Delivery notification: recipient=%s order=%s product=%s grants=%s licenses=%s",
            recipient,
            payload.get("order", {}).get("id"),
            product.get("id"),
            len(payload.get("grants", [])),
            len(payload.get("licenses", [])),
        )


class WebhookNotifier:
    """POSTs the payload as JSON to a configured endpoint."""

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout or settings.notification_timeout_seconds
        self._http_client = http_client

    def send(self, recipient: str, payload: Dict[str, Any]) -> None:
        body = {"recipient": recipient, "payload": payload}
        try:
            if self._http_client is not None:
                response = self._http_client.post(self.url, json=body)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery to {self.url} failed: {e}") from e

        if not response.is_success:
            raise NotificationError(f"Webhook delivery to {self.url} returned HTTP {response.status_code}")
        logger.info("Delivery notification posted: recipient=%s status=%s", recipient, response.status_code)


def get_notifier() -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url)
    return LogNotifier()
