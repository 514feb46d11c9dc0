"""
Payment gateway client (Toss Payments v1 wire format).

Implements:
- Payment confirmation (capture) and cancellation (reversal)
- Exponential backoff for transient errors, under an Idempotency-Key
- Circuit breaker pattern
- Provider error classification
"""
import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from payment_orchestrator.config.settings import GatewayConfig
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Confirm responses in these states mean the money has moved (or will, for
# virtual accounts) and the confirmation must be recorded.
APPROVED_PAYMENT_STATES = frozenset({"DONE", "WAITING_FOR_DEPOSIT"})
CANCELED_PAYMENT_STATES = frozenset({"CANCELED", "PARTIAL_CANCELED"})


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """A gateway call that did not produce an approval."""

    def __init__(
        self,
        message: str,
        code: str = "GATEWAY_ERROR",
        error_type: GatewayErrorType = GatewayErrorType.PERMANENT,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Human-readable error message
            code: Provider error code (or a local code for transport failures)
            error_type: Classification of error
            status_code: HTTP status code, if a response was received
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def is_retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


@dataclass(frozen=True)
class GatewayConfirmation:
    """Result of a successful confirm call."""

    approved: bool
    method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayCancellation:
    """Result of a successful cancel call."""

    approved: bool
    raw: Dict[str, Any] = field(default_factory=dict)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Opens after ``failure_threshold`` consecutive transient failures and
    fails fast until ``timeout`` seconds have passed. Business rejections do
    not count as failures: they prove the gateway is reachable.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError(
                    "Circuit breaker is open",
                    code="GATEWAY_UNAVAILABLE",
                    error_type=GatewayErrorType.TRANSIENT,
                )

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.is_retryable:
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class GatewayClient:
    """
    Async client for the payment gateway.

    Features:
    - Automatic retry with exponential backoff for transient failures
    - Idempotency keys so that a retried confirm or cancel is applied once
    - Circuit breaker pattern
    - Error classification into transient / permanent / rate limit
    """

    def __init__(
        self,
        config: GatewayConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize gateway client.

        Args:
            config: Gateway configuration (secret key, URL, retry budget)
            http_client: Optional preconfigured httpx client (tests inject a
                MockTransport-backed one)
            circuit_breaker: Optional circuit breaker shared across clients
            retry_wait: Optional tenacity wait strategy
        """
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

        logger.info(
            "gateway_client_initialized",
            api_url=config.api_url,
            live_mode=config.is_live,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def _auth_header(self) -> str:
        token = base64.b64encode(f"{self.config.secret_key}:".encode()).decode()
        return f"Basic {token}"

    def is_checkout_session_id(self, payment_key: str) -> bool:
        """A checkout-session identifier (``si_...``) is not proof of payment."""
        prefix = self.config.session_id_prefix
        return payment_key.startswith(prefix) and not payment_key.startswith(f"t{prefix}")

    def is_captured_payment_key(self, payment_key: str) -> bool:
        """Check the key against the captured-payment prefixes of the active environment."""
        return payment_key.startswith(self.config.payment_key_prefixes)

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status code of the response

        Returns:
            GatewayErrorType: Error classification
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        elif status_code >= 500:
            return GatewayErrorType.TRANSIENT
        else:
            return GatewayErrorType.PERMANENT

    def _error_from_response(self, response: httpx.Response) -> GatewayError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        error_type = self._classify_status(response.status_code)
        default_code = "PROVIDER_ERROR" if response.status_code >= 500 else "GATEWAY_ERROR"
        return GatewayError(
            message=body.get("message") or response.reason_phrase or "Gateway error",
            code=body.get("code") or default_code,
            error_type=error_type,
            status_code=response.status_code,
        )

    async def _post_once(
        self, operation: str, path: str, payload: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        start_time = time.monotonic()
        try:
            response = await self._client.post(
                f"{self.config.api_url}{path}", json=payload, headers=headers
            )
        except httpx.TransportError as e:
            metrics.record_gateway_call(operation, "transport_error", time.monotonic() - start_time)
            raise GatewayError(
                message=f"Gateway unreachable: {e}",
                code="GATEWAY_UNAVAILABLE",
                error_type=GatewayErrorType.TRANSIENT,
                original_error=e,
            ) from e

        duration = time.monotonic() - start_time

        if response.is_success:
            try:
                data = response.json()
            except ValueError as e:
                metrics.record_gateway_call(operation, "invalid_response", duration)
                raise GatewayError(
                    message="Gateway returned a non-JSON success response",
                    code="GATEWAY_UNAVAILABLE",
                    error_type=GatewayErrorType.TRANSIENT,
                    status_code=response.status_code,
                    original_error=e,
                ) from e
            metrics.record_gateway_call(operation, "success", duration)
            return data if isinstance(data, dict) else {"response": data}

        metrics.record_gateway_call(operation, "error", duration)
        raise self._error_from_response(response)

    async def _post(
        self, operation: str, path: str, payload: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        """
        POST to the gateway with retries on transient failures.

        Raises:
            GatewayError: Permanent rejection, or transient failure once the
                retry budget is exhausted
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(
                    lambda e: isinstance(e, GatewayError) and e.is_retryable
                ),
                stop=stop_after_attempt(self.config.max_attempts),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number > 1:
                        logger.warning(
                            "gateway_retry",
                            operation=operation,
                            attempt=attempt_number,
                        )
                    return await self.circuit_breaker.call(
                        self._post_once, operation, path, payload, idempotency_key
                    )
        except GatewayError as e:
            metrics.record_gateway_error(e.error_type.value)
            logger.error(
                "gateway_api_error",
                operation=operation,
                error_type=e.error_type.value,
                error_code=e.code,
                status_code=e.status_code,
                error_message=e.message,
            )
            raise

    async def confirm(self, payment_key: str, order_id: str, amount: int) -> GatewayConfirmation:
        """
        Capture an authorized payment.

        Args:
            payment_key: Gateway payment key returned to the checkout success redirect
            order_id: Order identifier registered with the gateway
            amount: Amount to capture (minor units)

        Returns:
            GatewayConfirmation: ``approved`` is False when the gateway answered
            2xx but the payment is not in a captured state

        Raises:
            GatewayError: If the gateway rejects the payment or cannot be reached
        """
        logger.info("confirming_payment", order_id=order_id, amount=amount)

        data = await self._post(
            "confirm",
            "/payments/confirm",
            {"paymentKey": payment_key, "orderId": order_id, "amount": amount},
            idempotency_key=f"confirm:{order_id}:{payment_key}",
        )

        status = data.get("status")
        approved = status in APPROVED_PAYMENT_STATES
        logger.info(
            "payment_confirmed_at_gateway" if approved else "payment_not_approved",
            order_id=order_id,
            gateway_status=status,
            method=data.get("method"),
        )
        return GatewayConfirmation(approved=approved, method=data.get("method"), raw=data)

    async def cancel(self, payment_key: str, amount: int, reason: str) -> GatewayCancellation:
        """
        Reverse a captured payment.

        Args:
            payment_key: Captured payment key
            amount: Amount to reverse (minor units)
            reason: Cancellation reason recorded at the gateway

        Returns:
            GatewayCancellation: Reversal result

        Raises:
            GatewayError: If the gateway rejects the reversal or cannot be reached
        """
        logger.info("canceling_payment", amount=amount)

        data = await self._post(
            "cancel",
            f"/payments/{payment_key}/cancel",
            {"cancelReason": reason, "cancelAmount": amount},
            idempotency_key=f"cancel:{payment_key}:{amount}",
        )

        status = data.get("status")
        approved = status in CANCELED_PAYMENT_STATES
        logger.info(
            "payment_canceled_at_gateway" if approved else "payment_cancel_not_approved",
            gateway_status=status,
        )
        return GatewayCancellation(approved=approved, raw=data)
