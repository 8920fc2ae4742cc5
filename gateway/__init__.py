"""Outbound notification gateway (notification / CRM service client)."""
from gateway.notifications import (
    NotificationDeliveryError, NotificationGateway, HttpNotificationGateway,
    LoggingNotificationGateway, create_notification_gateway,
)

__all__ = [
    "NotificationDeliveryError", "NotificationGateway", "HttpNotificationGateway",
    "LoggingNotificationGateway", "create_notification_gateway",
]
