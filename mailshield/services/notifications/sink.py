from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Protocol

import httpx

from mailshield.core.config import Settings, get_settings
from mailshield.domain.types import utc_now


logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, *, tenant_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        ...


class LogNotificationSink:
    """Default sink: writes the event to the application log."""

    async def notify(self, *, tenant_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("notification_emitted tenant_id=%s event_type=%s keys=%s", tenant_id, event_type, sorted(payload))

    async def aclose(self) -> None:
        return None


class WebhookNotificationSink:
    """POSTs each event as JSON to the configured downstream notifier."""

    def __init__(self, url: str, *, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self._url = url
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout_s = max(0.2, self._settings.notify_webhook_timeout_ms / 1000.0)
            self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def notify(self, *, tenant_id: str, event_type: str, payload: dict[str, Any]) -> None:
        body = {
            "tenant_id": tenant_id,
            "event_type": event_type,
            "occurred_at": utc_now().isoformat(),
            "payload": payload,
        }
        payload_bytes = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        response = await self._get_client().post(
            self._url,
            content=payload_bytes,
            headers={
                "Content-Type": "application/json",
                "X-Notification-Event-Type": event_type,
                "X-Notification-Tenant-Id": tenant_id,
                "X-Notification-Payload-Sha256": hashlib.sha256(payload_bytes).hexdigest(),
            },
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


async def emit_best_effort(
    sink: NotificationSink, *, tenant_id: str, event_type: str, payload: dict[str, Any]
) -> bool:
    # The core operation already succeeded; a sink outage is logged, never raised.
    try:
        await sink.notify(tenant_id=tenant_id, event_type=event_type, payload=payload)
    except Exception as exc:  # noqa: BLE001 - sinks are external collaborators
        logger.warning("notification_sink_failed tenant_id=%s event_type=%s", tenant_id, event_type, exc_info=exc)
        return False
    return True


def build_notification_sink(settings: Settings | None = None) -> NotificationSink:
    settings = settings or get_settings()
    if settings.notify_webhook_url:
        return WebhookNotificationSink(settings.notify_webhook_url, settings=settings)
    return LogNotificationSink()
