"""
Service wiring for the API.

Each provider builds its service once from settings. Tests replace them
through ``app.dependency_overrides``.
"""
from datetime import timedelta
from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, status

from payment_orchestrator.config import get_settings
from payment_orchestrator.core.cancellation import CancellationOrchestrator
from payment_orchestrator.core.confirmation import ConfirmationOrchestrator
from payment_orchestrator.core.fulfillment import FulfillmentService
from payment_orchestrator.core.outbox import OutboxRelay
from payment_orchestrator.core.results import Principal
from payment_orchestrator.core.state_machine import OrderStateMachine, OrderStatus
from payment_orchestrator.database.store import OrderPaymentStore
from payment_orchestrator.integrations.gateway_client import GatewayClient
from payment_orchestrator.integrations.notifications import (
    BackgroundNotifier,
    HttpNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from payment_orchestrator.integrations.secondary_backend import SecondaryBackendPropagator
from payment_orchestrator.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@lru_cache()
def get_state_machine() -> OrderStateMachine:
    settings = get_settings()
    return OrderStateMachine(
        allow_completed_cancellation=settings.allow_completed_cancellation,
        cancellation_window=timedelta(hours=settings.cancellation_window_hours),
        window_exempt_statuses=[
            OrderStatus(s) for s in settings.get_window_exempt_statuses()
        ],
    )


@lru_cache()
def get_store() -> OrderPaymentStore:
    return OrderPaymentStore()


@lru_cache()
def get_gateway_client() -> GatewayClient:
    return GatewayClient(get_settings().gateway_config())


@lru_cache()
def get_propagator() -> SecondaryBackendPropagator:
    settings = get_settings()
    return SecondaryBackendPropagator(
        base_url=settings.secondary_backend_url,
        token=settings.secondary_backend_token,
        timeout_seconds=settings.secondary_backend_timeout_seconds,
    )


@lru_cache()
def get_notifier() -> BackgroundNotifier:
    settings = get_settings()
    dispatcher: NotificationDispatcher
    if settings.notification_url:
        dispatcher = HttpNotificationDispatcher(settings.notification_url)
    else:
        dispatcher = LoggingNotificationDispatcher()
    return BackgroundNotifier(dispatcher)


@lru_cache()
def get_confirmation_orchestrator() -> ConfirmationOrchestrator:
    return ConfirmationOrchestrator(
        store=get_store(),
        gateway=get_gateway_client(),
        propagator=get_propagator(),
        notifier=get_notifier(),
        auto_reverse_on_persist_failure=get_settings().auto_reverse_on_persist_failure,
    )


@lru_cache()
def get_cancellation_orchestrator() -> CancellationOrchestrator:
    return CancellationOrchestrator(
        store=get_store(),
        gateway=get_gateway_client(),
        notifier=get_notifier(),
        state_machine=get_state_machine(),
        override_roles=get_settings().get_override_roles(),
    )


@lru_cache()
def get_fulfillment_service() -> FulfillmentService:
    return FulfillmentService(store=get_store(), state_machine=get_state_machine())


@lru_cache()
def get_outbox_relay() -> OutboxRelay:
    settings = get_settings()
    return OutboxRelay(
        propagator=get_propagator(),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None),
) -> Principal:
    """
    Principal asserted by the upstream auth layer.

    Both headers are taken at face value, so the service must sit behind a
    proxy that strips or overwrites X-User-Id and X-User-Roles on every
    inbound request. Without such a proxy, set ``trust_forwarded_roles`` to
    False: roles are then ignored and only ownership checks apply.

    Raises:
        HTTPException: 401 if neither a user id nor roles were forwarded
    """
    roles = frozenset(r.strip() for r in (x_user_roles or "").split(",") if r.strip())
    if roles and not get_settings().trust_forwarded_roles:
        logger.warning("forwarded_roles_ignored", user_id=x_user_id)
        roles = frozenset()
    if not x_user_id and not roles:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id / X-User-Roles headers",
        )
    return Principal(user_id=x_user_id or None, roles=roles)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """
    Restrict an endpoint to the configured override roles.

    Raises:
        HTTPException: 403 if the principal holds none of them
    """
    if not (get_settings().get_override_roles() & principal.roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return principal


async def shutdown_services() -> None:
    """Let in-flight sagas and notifications finish, then close HTTP clients."""
    if get_confirmation_orchestrator.cache_info().currsize:
        await get_confirmation_orchestrator().drain()
    if get_cancellation_orchestrator.cache_info().currsize:
        await get_cancellation_orchestrator().drain()
    if get_notifier.cache_info().currsize:
        notifier = get_notifier()
        await notifier.drain()
        if isinstance(notifier.dispatcher, HttpNotificationDispatcher):
            await notifier.dispatcher.close()
    if get_gateway_client.cache_info().currsize:
        await get_gateway_client().close()
    if get_propagator.cache_info().currsize:
        await get_propagator().close()

    for provider in (
        get_confirmation_orchestrator,
        get_cancellation_orchestrator,
        get_fulfillment_service,
        get_outbox_relay,
        get_notifier,
        get_gateway_client,
        get_propagator,
        get_store,
        get_state_machine,
        get_health_check,
    ):
        provider.cache_clear()
    logger.info("services_shut_down")
