"""
Notification Sink - delivery of security events and operational alerts.

The core only emits events; Discord bots and email relays subscribe to the
webhook. Delivery is best-effort: failures are logged, never raised into an
access decision.
"""

from collections.abc import Sequence
from typing import Protocol

import httpx
from structlog import get_logger

from keyguard.models.domain import OperationalAlert, SecurityEvent

logger = get_logger(__name__)


class NotificationSink(Protocol):
    """Receiver of security events and operational alerts."""

    async def security_event(self, event: SecurityEvent) -> None: ...

    async def operational_alert(self, alert: OperationalAlert) -> None: ...


class LoggingNotificationSink:
    """Writes notifications to the structured log."""

    async def security_event(self, event: SecurityEvent) -> None:
        logger.warning(
            "security_event",
            kind=event.kind,
            severity=event.severity,
            origin=event.origin,
            credential_id=event.credential_id,
            resource_id=event.resource_id,
            requester_id=event.requester_id,
            detail=event.detail,
        )

    async def operational_alert(self, alert: OperationalAlert) -> None:
        logger.error("operational_alert", component=alert.component, message=alert.message)


class WebhookNotificationSink:
    """
    Posts notifications as JSON to a webhook URL.

    Credential ids are never sent; only their presence is signalled.
    """

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def security_event(self, event: SecurityEvent) -> None:
        await self._post(
            {
                "type": "security_event",
                "kind": event.kind,
                "severity": event.severity,
                "origin": event.origin,
                "resource_id": event.resource_id,
                "requester_id": event.requester_id,
                "has_credential": event.credential_id is not None,
                "detail": event.detail,
                "occurred_at": event.occurred_at.isoformat(),
            }
        )

    async def operational_alert(self, alert: OperationalAlert) -> None:
        await self._post(
            {
                "type": "operational_alert",
                "component": alert.component,
                "message": alert.message,
                "occurred_at": alert.occurred_at.isoformat(),
            }
        )

    async def _post(self, payload: dict[str, object]) -> None:
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "notification_delivery_failed",
                notification_type=payload["type"],
                error=str(e),
            )


class CompositeNotificationSink:
    """Fans notifications out to several sinks in order."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks = tuple(sinks)

    async def security_event(self, event: SecurityEvent) -> None:
        for sink in self.sinks:
            await sink.security_event(event)

    async def operational_alert(self, alert: OperationalAlert) -> None:
        for sink in self.sinks:
            await sink.operational_alert(alert)


def build_notification_sink(webhook_url: str = "", timeout: float = 5.0) -> NotificationSink:
    """Logging sink, plus the webhook sink when a URL is configured."""
    if not webhook_url:
        return LoggingNotificationSink()
    return CompositeNotificationSink(
        [LoggingNotificationSink(), WebhookNotificationSink(webhook_url, timeout=timeout)]
    )
