"""Tests for the notification gateway (httpx.MockTransport, no network)."""
import httpx
import pytest

from config.settings import NotificationConfig
from gateway.notifications import (
    HttpNotificationGateway, LoggingNotificationGateway, NotificationDeliveryError,
    create_notification_gateway,
)
from models.schemas import NotificationEvent

BASE_URL = "http://notifications.test"


def _event() -> NotificationEvent:
    return NotificationEvent(
        event_type="program_session_reminder",
        target_user_id="writer_01",
        resource_type="program_session",
        resource_id="sess_1",
        payload={"programId": "program_1", "reminderOffsetMinutes": 60},
    )


def _gateway(handler, retries: int = 3) -> HttpNotificationGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return HttpNotificationGateway(NotificationConfig(base_url=BASE_URL, connect_retries=retries), client=client)


class TestHttpNotificationGateway:
    @pytest.mark.asyncio
    async def test_posts_camel_case_event(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"accepted": True})

        gateway = _gateway(handler)
        await gateway.publish(_event())
        await gateway.close()

        assert len(seen) == 1
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/internal/events"
        body = httpx.Response(200, content=request.content).json()
        assert set(body) == {
            "eventId", "eventType", "occurredAt", "actorUserId",
            "targetUserId", "resourceType", "resourceId", "payload",
        }
        assert body["eventId"].startswith("event_")
        assert body["eventType"] == "program_session_reminder"
        assert body["targetUserId"] == "writer_01"
        assert body["actorUserId"] is None
        assert body["payload"]["reminderOffsetMinutes"] == 60

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="internal")

        gateway = _gateway(handler)
        with pytest.raises(NotificationDeliveryError) as exc:
            await gateway.publish(_event())
        assert str(exc.value) == "notification_failed:500:internal"
        assert exc.value.status == 500
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_client_error_status_raises(self):
        gateway = _gateway(lambda request: httpx.Response(404, text="unknown route"))
        with pytest.raises(NotificationDeliveryError) as exc:
            await gateway.publish(_event())
        assert str(exc.value).startswith("notification_failed:404:")

    @pytest.mark.asyncio
    async def test_connect_errors_retried_then_raised(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        gateway = _gateway(handler, retries=3)
        with pytest.raises(NotificationDeliveryError) as exc:
            await gateway.publish(_event())
        assert len(calls) == 3
        assert str(exc.value).startswith("notification_failed:transport:")

    @pytest.mark.asyncio
    async def test_connect_error_then_success(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        await _gateway(handler).publish(_event())
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_read_timeout_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(NotificationDeliveryError):
            await _gateway(handler).publish(_event())
        assert len(calls) == 1


class TestGatewayFactory:
    def test_empty_base_url_gives_logging_gateway(self):
        gateway = create_notification_gateway(NotificationConfig(base_url=""))
        assert isinstance(gateway, LoggingNotificationGateway)

    def test_base_url_gives_http_gateway(self):
        gateway = create_notification_gateway(NotificationConfig(base_url=BASE_URL))
        assert isinstance(gateway, HttpNotificationGateway)

    @pytest.mark.asyncio
    async def test_logging_gateway_records_events(self):
        gateway = LoggingNotificationGateway()
        event = _event()
        await gateway.publish(event)
        assert gateway.published == [event]
