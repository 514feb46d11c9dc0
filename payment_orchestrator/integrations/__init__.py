"""External integrations: payment gateway, order-management backend, notifications."""
from .gateway_client import GatewayClient, GatewayError, GatewayErrorType
from .notifications import (
    BackgroundNotifier,
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from .secondary_backend import PushOutcome, SecondaryBackendPropagator

__all__ = [
    "GatewayClient",
    "GatewayError",
    "GatewayErrorType",
    "BackgroundNotifier",
    "HttpNotificationDispatcher",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "PushOutcome",
    "SecondaryBackendPropagator",
]
