"""
Notification Gateway — Publishes scheduler events to the notification service.

Every reminder and every CRM sync request leaves the process as one
NotificationEvent POSTed to {base_url}/internal/events. Delivery is a
single attempt from the caller's point of view: a non-2xx status or any
transport error raises NotificationDeliveryError, and the dispatchers turn
that into a job failure or a failed candidate.

Only connection-establishment errors are retried in-process, since the
request provably never reached the service.
"""
from __future__ import annotations

import abc
import structlog
from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import NotificationConfig, get_settings
from models.schemas import NotificationEvent

logger = structlog.get_logger()

EVENTS_PATH = "/internal/events"


class NotificationDeliveryError(Exception):
    """Raised when the notification service did not accept an event."""

    def __init__(self, status: object, detail: str = ""):
        self.status = status
        self.detail = detail
        super().__init__(f"notification_failed:{status}:{detail}")


class NotificationGateway(abc.ABC):
    """Abstract base for all notification gateways."""

    @abc.abstractmethod
    async def publish(self, event: NotificationEvent) -> None:
        """Deliver one event or raise NotificationDeliveryError."""
        ...

    async def close(self) -> None:
        return None


class HttpNotificationGateway(NotificationGateway):
    """
    httpx-backed gateway for the notification service.
    Pass `client` to share a pool or to plug in an httpx.MockTransport.
    """

    def __init__(self, config: NotificationConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().notifications
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers={"content-type": "application/json"},
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def publish(self, event: NotificationEvent) -> None:
        client = await self._get_client()
        body = event.to_wire()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
                stop=stop_after_attempt(max(1, self.config.connect_retries)),
                wait=wait_exponential(multiplier=0.1, max=2),
                reraise=True,
            ):
                with attempt:
                    response = await client.post(EVENTS_PATH, json=body)
        except httpx.HTTPError as e:
            logger.warning("notification_transport_error",
                           event_type=event.event_type, event_id=event.event_id, error=str(e))
            raise NotificationDeliveryError("transport", str(e)) from e

        if response.status_code >= 400:
            logger.warning("notification_rejected",
                           event_type=event.event_type, event_id=event.event_id,
                           status=response.status_code)
            raise NotificationDeliveryError(response.status_code, response.text)

        logger.debug("notification_published", event_type=event.event_type, event_id=event.event_id)

    async def close(self):
        if self.client:
            await self.client.aclose()


class LoggingNotificationGateway(NotificationGateway):
    """
    Mock gateway for development and testing.
    Logs each event and keeps it in `published` for inspection.
    """

    def __init__(self):
        self.published: list[NotificationEvent] = []

    async def publish(self, event: NotificationEvent) -> None:
        self.published.append(event)
        logger.info("mock_notification_published",
                    event_type=event.event_type, target_user_id=event.target_user_id,
                    resource_id=event.resource_id)


def create_notification_gateway(config: NotificationConfig = None) -> NotificationGateway:
    """Factory function to create the appropriate notification gateway."""
    config = config or get_settings().notifications
    if config.base_url:
        return HttpNotificationGateway(config)
    logger.warning("using_logging_gateway", reason="notification base_url empty")
    return LoggingNotificationGateway()
