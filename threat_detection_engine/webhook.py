from __future__ import annotations

import logging
from typing import Any, Collection, Mapping, MutableMapping, Optional

import httpx
from fastapi.encoders import jsonable_encoder

from .config import webhook_url
from .events import BlockingDelivery, EventKind
from .models import utcnow

logger = logging.getLogger(__name__)

ADMIN_ALERT_KINDS = frozenset(
    {
        EventKind.SECURITY_ALERT,
        EventKind.ACCOUNT_LOCKED,
        EventKind.SESSION_TERMINATED,
        EventKind.ANOMALY_DETECTED,
    }
)


def build_event_payload(kind: EventKind, payload: Any, source: str = "threat_detection_engine") -> MutableMapping[str, Any]:
    """Create a JSON-serializable body describing an engine event."""
    body: MutableMapping[str, Any] = {
        "event": kind.value,
        "source": source,
        "emitted_at": utcnow(),
        "payload": payload,
    }
    return jsonable_encoder(body)  # normalizes dataclasses, enums, datetimes and timedeltas


def deliver_webhook(url: Optional[str], body: Mapping[str, Any], client: Optional[httpx.Client] = None) -> bool:
    """Send the body to the configured webhook endpoint if present."""
    if not url:
        return False

    try:
        if client is not None:
            client.post(str(url), json=body).raise_for_status()
        else:
            with httpx.Client(timeout=5.0) as owned:
                owned.post(str(url), json=body).raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to deliver security webhook to %s: %s", url, exc)
        return False
    return True


class WebhookNotifier:
    """Event-bus subscriber that forwards admin-facing events to a webhook."""

    def __init__(
        self,
        url: Optional[str] = None,
        kinds: Collection[EventKind] = ADMIN_ALERT_KINDS,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url or webhook_url()
        self.kinds = frozenset(kinds)
        self.client = client
        self.delivery = BlockingDelivery("webhook")

    def __call__(self, kind: EventKind, payload: Any) -> None:
        if kind not in self.kinds or not self.url:
            return
        body = build_event_payload(kind, payload)
        self.delivery.submit(deliver_webhook, self.url, body, self.client)

    async def drain(self) -> None:
        await self.delivery.drain()
