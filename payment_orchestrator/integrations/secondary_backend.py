"""
Order-management backend propagator.

Pushes confirmed payments to the downstream order-management service. The
push is best effort: it never raises, it reports a ``PushOutcome`` and the
caller decides whether to leave the outbox row pending.
"""
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog

from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PushOutcome(Enum):
    """Result of a push to the order-management backend."""

    OK = "ok"
    NOT_FOUND = "not_found"  # backend has no such order: nothing to sync
    RETRYABLE_ERROR = "retryable_error"


class SecondaryBackendPropagator:
    """
    Client for ``POST {base_url}/api/Payment/confirm``.

    When no base URL is configured the backend is treated as absent and every
    push reports ``NOT_FOUND``.
    """

    CONFIRM_PATH = "/api/Payment/confirm"

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str] = None,
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token = token
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self.base_url is not None

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def push_confirmation(
        self,
        order_id: str,
        payment_key: str,
        method: Optional[str],
        gateway_payload: Optional[Dict[str, Any]] = None,
    ) -> PushOutcome:
        """
        Tell the order-management backend that an order has been paid.

        Args:
            order_id: Order identifier (``orderNo`` downstream)
            payment_key: Captured gateway payment key
            method: Payment method reported by the gateway
            gateway_payload: Raw gateway confirmation body

        Returns:
            PushOutcome: OK, NOT_FOUND or RETRYABLE_ERROR
        """
        if not self.enabled:
            logger.debug("secondary_sync_disabled", order_id=order_id)
            metrics.record_secondary_sync(PushOutcome.NOT_FOUND.value)
            return PushOutcome.NOT_FOUND

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        body = {
            "orderNo": order_id,
            "paymentKey": payment_key,
            "paymentMethod": method,
            "tossData": gateway_payload or {},
        }

        start_time = time.monotonic()
        try:
            response = await self._client.post(
                f"{self.base_url}{self.CONFIRM_PATH}", json=body, headers=headers
            )
        except httpx.HTTPError as e:
            logger.warning("secondary_sync_unreachable", order_id=order_id, error=str(e))
            metrics.record_secondary_sync(PushOutcome.RETRYABLE_ERROR.value)
            return PushOutcome.RETRYABLE_ERROR

        outcome = self._classify(response)
        log = logger.info if outcome != PushOutcome.RETRYABLE_ERROR else logger.warning
        log(
            "secondary_sync_result",
            order_id=order_id,
            outcome=outcome.value,
            status_code=response.status_code,
            duration_seconds=round(time.monotonic() - start_time, 3),
        )
        metrics.record_secondary_sync(outcome.value)
        return outcome

    @staticmethod
    def _classify(response: httpx.Response) -> PushOutcome:
        if response.status_code == 404:
            return PushOutcome.NOT_FOUND
        if not response.is_success:
            return PushOutcome.RETRYABLE_ERROR
        # A non-JSON 2xx is a proxy or error page, not the backend's answer.
        content_type = response.headers.get("content-type", "")
        if response.content and "application/json" not in content_type:
            return PushOutcome.RETRYABLE_ERROR
        return PushOutcome.OK
