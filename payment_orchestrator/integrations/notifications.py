"""
Customer notification adapters.

The notification service itself (SMS/email delivery) lives elsewhere; this
module only hands events to it. Orchestrators never await delivery: they go
through ``BackgroundNotifier``, which schedules each call as a task and logs
failures from a done-callback.
"""
import asyncio
from functools import partial
from typing import Any, Coroutine, Dict, Optional, Set

import httpx
import structlog

from payment_orchestrator.database.store import OrderRecord
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _order_payload(event: str, order: OrderRecord) -> Dict[str, Any]:
    return {
        "event": event,
        "order_id": order.id,
        "status": order.status.value,
        "total_amount": order.total_amount,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
            }
            for item in order.items
        ],
    }


class NotificationDispatcher:
    """Interface of the notification service adapter."""

    async def notify_payment_completed(self, order: OrderRecord) -> None:
        raise NotImplementedError

    async def notify_payment_failed(self, order: OrderRecord) -> None:
        raise NotImplementedError

    async def notify_order_canceled(self, order: OrderRecord) -> None:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Dispatcher used when no notification service is configured."""

    async def notify_payment_completed(self, order: OrderRecord) -> None:
        logger.info("notify_payment_completed", order_id=order.id, total_amount=order.total_amount)

    async def notify_payment_failed(self, order: OrderRecord) -> None:
        logger.info("notify_payment_failed", order_id=order.id)

    async def notify_order_canceled(self, order: OrderRecord) -> None:
        logger.info("notify_order_canceled", order_id=order.id, total_amount=order.total_amount)


class HttpNotificationDispatcher(NotificationDispatcher):
    """Posts order events as JSON to the notification service."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, event: str, order: OrderRecord) -> None:
        response = await self._client.post(self.url, json=_order_payload(event, order))
        response.raise_for_status()
        logger.debug("notification_sent", notification_event=event, order_id=order.id)

    async def notify_payment_completed(self, order: OrderRecord) -> None:
        await self._send("payment_completed", order)

    async def notify_payment_failed(self, order: OrderRecord) -> None:
        await self._send("payment_failed", order)

    async def notify_order_canceled(self, order: OrderRecord) -> None:
        await self._send("order_canceled", order)


class BackgroundNotifier:
    """
    Fire-and-forget wrapper around a ``NotificationDispatcher``.

    Each notification runs as its own task; a reference is held until the
    task finishes so it is not garbage collected mid-flight.
    """

    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self.dispatcher = dispatcher
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def payment_completed(self, order: OrderRecord) -> None:
        self._spawn("payment_completed", order.id, self.dispatcher.notify_payment_completed(order))

    def payment_failed(self, order: OrderRecord) -> None:
        self._spawn("payment_failed", order.id, self.dispatcher.notify_payment_failed(order))

    def order_canceled(self, order: OrderRecord) -> None:
        self._spawn("order_canceled", order.id, self.dispatcher.notify_order_canceled(order))

    def _spawn(self, kind: str, order_id: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro, name=f"notify:{kind}:{order_id}")
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_done, kind, order_id))

    def _on_done(self, kind: str, order_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("notification_cancelled", kind=kind, order_id=order_id)
            metrics.record_notification_failure(kind)
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "notification_failed",
                kind=kind,
                order_id=order_id,
                error=str(error),
                error_class=type(error).__name__,
            )
            metrics.record_notification_failure(kind)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
