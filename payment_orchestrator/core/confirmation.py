"""
Payment confirmation saga.

Turns a client-submitted "payment was authorized" signal into a durable
state change across three systems that fail independently:

1. Validate the request locally (no mutation, no gateway call)
2. Capture at the gateway
3. Record the capture locally: Payment COMPLETED, Order PAID, audit row and
   outbox row in one conditional transaction
4. Push to the order-management backend (best effort, outbox retries)
5. Notify the customer (fire-and-forget)

There is no distributed transaction. Step 3 failing after step 2 succeeded
is reported as LOCAL_PERSIST_FAILED_AFTER_CAPTURE and raised as a
reconciliation incident.
"""
import dataclasses
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from payment_orchestrator.core.exceptions import OrderNotFoundError
from payment_orchestrator.core.results import (
    ConfirmationOutcome,
    ConfirmationRequest,
    ConfirmationResult,
)
from payment_orchestrator.core.saga import ShieldedSaga
from payment_orchestrator.core.state_machine import (
    TERMINAL_PAYMENT_STATUSES,
    OrderStatus,
    PaymentStatus,
)
from payment_orchestrator.database.store import (
    PAYMENT_CONFIRMED_EVENT,
    OrderAggregate,
    OrderPaymentStore,
    OutboxMessage,
    StoreError,
    TransitionAudit,
)
from payment_orchestrator.integrations.gateway_client import (
    GatewayClient,
    GatewayConfirmation,
    GatewayError,
)
from payment_orchestrator.integrations.notifications import BackgroundNotifier
from payment_orchestrator.integrations.secondary_backend import (
    PushOutcome,
    SecondaryBackendPropagator,
)
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AUTO_REVERSAL_REASON = "Automatic reversal: payment could not be recorded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _invalid(order_id: Optional[str], code: str, message: str) -> ConfirmationResult:
    return ConfirmationResult(
        outcome=ConfirmationOutcome.INVALID_REQUEST,
        order_id=order_id,
        error_code=code,
        error_message=message,
    )


class ConfirmationOrchestrator(ShieldedSaga):
    """
    Confirmation saga over gateway, primary store and secondary backend.

    Also records checkout failures, the only other writer that moves a
    payment out of PENDING.
    """

    def __init__(
        self,
        store: OrderPaymentStore,
        gateway: GatewayClient,
        propagator: SecondaryBackendPropagator,
        notifier: BackgroundNotifier,
        auto_reverse_on_persist_failure: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the confirmation orchestrator.

        Args:
            store: Order/Payment store
            gateway: Payment gateway client
            propagator: Order-management backend propagator
            notifier: Fire-and-forget notification wrapper
            auto_reverse_on_persist_failure: Reverse the capture at the gateway
                when it cannot be recorded locally
            clock: Source of ``approved_at`` timestamps
        """
        super().__init__()
        self.store = store
        self.gateway = gateway
        self.propagator = propagator
        self.notifier = notifier
        self.auto_reverse_on_persist_failure = auto_reverse_on_persist_failure
        self.clock = clock

    async def confirm(self, request: ConfirmationRequest) -> ConfirmationResult:
        """
        Confirm a payment for an order.

        Safe to call repeatedly for the same order: once the payment is
        recorded, replays return ALREADY_CONFIRMED without a gateway call.

        Args:
            request: Payment key, order id and amount from the checkout redirect

        Returns:
            ConfirmationResult: Outcome and resulting state

        Raises:
            StoreError: If the order cannot be read (before any money moves)
        """
        return await self._run_shielded(
            self._timed_confirm(request), name=f"confirm:{request.order_id}"
        )

    async def _timed_confirm(self, request: ConfirmationRequest) -> ConfirmationResult:
        start_time = time.monotonic()
        result = await self._confirm(request)
        metrics.record_confirmation(result.outcome.value, time.monotonic() - start_time)
        return result

    def _validate_request(self, request: ConfirmationRequest) -> Optional[ConfirmationResult]:
        amount = request.amount
        if (
            not request.payment_key
            or not request.order_id
            or amount is None
            or isinstance(amount, bool)
            or not isinstance(amount, int)
            or amount <= 0
        ):
            return _invalid(
                request.order_id,
                "MISSING_FIELDS",
                "paymentKey, orderId and a positive integer amount are required",
            )

        if self.gateway.is_checkout_session_id(request.payment_key):
            return ConfirmationResult(
                outcome=ConfirmationOutcome.PAYMENT_NOT_COMPLETED,
                order_id=request.order_id,
                error_code="PAYMENT_NOT_COMPLETED",
                error_message="Checkout session identifier received; payment was not completed",
            )

        if not self.gateway.is_captured_payment_key(request.payment_key):
            return _invalid(
                request.order_id,
                "INVALID_PAYMENT_KEY",
                "Payment key does not match the active gateway environment",
            )

        return None

    @staticmethod
    def _check_aggregate(
        request: ConfirmationRequest, aggregate: Optional[OrderAggregate]
    ) -> Optional[ConfirmationResult]:
        if aggregate is None:
            return _invalid(request.order_id, "ORDER_NOT_FOUND", "Order not found")

        order, payment = aggregate.order, aggregate.payment
        if payment is None:
            return _invalid(request.order_id, "PAYMENT_NOT_FOUND", "Payment record not found")

        if payment.status in TERMINAL_PAYMENT_STATUSES:
            return ConfirmationResult(
                outcome=ConfirmationOutcome.ALREADY_CONFIRMED,
                order_id=order.id,
                order_status=order.status,
                payment_status=payment.status,
                payment_key=payment.payment_key,
                method=payment.method,
            )

        if payment.status == PaymentStatus.FAILED or order.status != OrderStatus.PENDING:
            return _invalid(
                order.id,
                "ORDER_NOT_PAYABLE",
                f"Order is {order.status.value}, payment is {payment.status.value}",
            )

        if request.amount != order.total_amount:
            return _invalid(
                order.id,
                "AMOUNT_MISMATCH",
                f"Amount {request.amount} does not match order total {order.total_amount}",
            )

        return None

    async def _confirm(self, request: ConfirmationRequest) -> ConfirmationResult:
        correlation_id = str(uuid.uuid4())
        log = logger.bind(order_id=request.order_id, correlation_id=correlation_id)

        rejection = self._validate_request(request)
        if rejection is not None:
            log.info(
                "confirmation_rejected",
                outcome=rejection.outcome.value,
                error_code=rejection.error_code,
            )
            return rejection

        aggregate = await self.store.get_by_order_id(request.order_id)
        rejection = self._check_aggregate(request, aggregate)
        if rejection is not None:
            log.info(
                "confirmation_rejected",
                outcome=rejection.outcome.value,
                error_code=rejection.error_code,
            )
            return rejection

        order = aggregate.order

        # Gateway capture
        try:
            confirmation = await self.gateway.confirm(
                request.payment_key, request.order_id, request.amount
            )
        except GatewayError as e:
            if e.is_retryable:
                log.warning(
                    "gateway_outcome_unknown",
                    error_code=e.code,
                    error_message=e.message,
                )
                code = "GATEWAY_UNAVAILABLE"
            else:
                code = e.code
            return ConfirmationResult(
                outcome=ConfirmationOutcome.GATEWAY_REJECTED,
                order_id=order.id,
                order_status=order.status,
                payment_status=aggregate.payment.status,
                error_code=code,
                error_message=e.message,
            )

        if not confirmation.approved:
            log.warning("gateway_not_approved", gateway_status=confirmation.raw.get("status"))
            return ConfirmationResult(
                outcome=ConfirmationOutcome.GATEWAY_REJECTED,
                order_id=order.id,
                order_status=order.status,
                payment_status=aggregate.payment.status,
                error_code="NOT_APPROVED",
                error_message=f"Gateway reported status {confirmation.raw.get('status')}",
            )

        # Local record of the capture
        approved_at = self.clock()
        try:
            applied = await self.store.conditionally_transition(
                order.id,
                expected_order_status=OrderStatus.PENDING,
                expected_payment_status=PaymentStatus.PENDING,
                new_order_status=OrderStatus.PAID,
                new_payment_fields={
                    "status": PaymentStatus.COMPLETED,
                    "payment_key": request.payment_key,
                    "method": confirmation.method,
                    "approved_at": approved_at,
                },
                audit=TransitionAudit(
                    event_type="payment.confirmed",
                    event_data={"amount": request.amount, "method": confirmation.method},
                    correlation_id=correlation_id,
                ),
                outbox=OutboxMessage(
                    event_type=PAYMENT_CONFIRMED_EVENT,
                    payload={
                        "order_id": order.id,
                        "payment_key": request.payment_key,
                        "method": confirmation.method,
                        "gateway_payload": confirmation.raw,
                    },
                ),
            )
        except StoreError as e:
            return await self._persist_failed(request, confirmation, log, str(e))

        if not applied:
            current = await self._reread(request.order_id, log)
            payment = current.payment if current else None
            if (
                payment is not None
                and payment.status == PaymentStatus.COMPLETED
                and payment.payment_key == request.payment_key
            ):
                log.info("confirmation_raced_same_key")
                return ConfirmationResult(
                    outcome=ConfirmationOutcome.ALREADY_CONFIRMED,
                    order_id=current.order.id,
                    order_status=current.order.status,
                    payment_status=payment.status,
                    payment_key=payment.payment_key,
                    method=payment.method,
                )
            return await self._persist_failed(
                request, confirmation, log, "order changed while the capture was in flight"
            )

        log.info("payment_recorded", method=confirmation.method)

        self.notifier.payment_completed(dataclasses.replace(order, status=OrderStatus.PAID))

        # Order-management backend; the outbox row covers any failure here
        push = await self.propagator.push_confirmation(
            order.id, request.payment_key, confirmation.method, confirmation.raw
        )
        secondary_synced = push != PushOutcome.RETRYABLE_ERROR
        if secondary_synced:
            try:
                await self.store.mark_secondary_synced(order.id)
            except StoreError as e:
                log.warning("outbox_mark_failed", error=str(e))
        else:
            log.warning("secondary_sync_deferred")

        outcome = (
            ConfirmationOutcome.CONFIRMED
            if secondary_synced
            else ConfirmationOutcome.CONFIRMED_WITHOUT_SECONDARY_SYNC
        )
        log.info("payment_confirmation_completed", outcome=outcome.value)

        return ConfirmationResult(
            outcome=outcome,
            order_id=order.id,
            order_status=OrderStatus.PAID,
            payment_status=PaymentStatus.COMPLETED,
            payment_key=request.payment_key,
            method=confirmation.method,
            secondary_synced=secondary_synced,
            gateway_payload=confirmation.raw,
        )

    async def _reread(self, order_id: str, log: structlog.stdlib.BoundLogger) -> Optional[OrderAggregate]:
        try:
            return await self.store.get_by_order_id(order_id)
        except StoreError as e:
            log.error("confirmation_reread_failed", error=str(e))
            return None

    async def _persist_failed(
        self,
        request: ConfirmationRequest,
        confirmation: GatewayConfirmation,
        log: structlog.stdlib.BoundLogger,
        error: str,
    ) -> ConfirmationResult:
        incident = ConfirmationOutcome.LOCAL_PERSIST_FAILED_AFTER_CAPTURE.value
        log.critical(
            "payment_captured_but_not_recorded",
            incident=incident,
            payment_key=request.payment_key,
            amount=request.amount,
            method=confirmation.method,
            error=error,
        )
        metrics.record_reconciliation_incident(incident)

        result = ConfirmationResult(
            outcome=ConfirmationOutcome.LOCAL_PERSIST_FAILED_AFTER_CAPTURE,
            order_id=request.order_id,
            payment_key=request.payment_key,
            method=confirmation.method,
            error_code=incident,
            error_message=error,
            gateway_payload=confirmation.raw,
        )

        if not self.auto_reverse_on_persist_failure:
            return result

        result.reversal_attempted = True
        try:
            reversal = await self.gateway.cancel(
                request.payment_key, request.amount, AUTO_REVERSAL_REASON
            )
            result.reversal_succeeded = reversal.approved
        except GatewayError as e:
            result.reversal_succeeded = False
            log.critical(
                "automatic_reversal_failed",
                incident=incident,
                payment_key=request.payment_key,
                error_code=e.code,
                error_message=e.message,
            )
        else:
            log.warning(
                "automatic_reversal_completed",
                payment_key=request.payment_key,
                approved=reversal.approved,
            )
        return result

    async def record_failure(self, order_id: str, code: Optional[str], message: Optional[str]) -> bool:
        """
        Record a checkout failure reported by the gateway redirect.

        Moves a PENDING order and payment to FAILED. No gateway call.

        Args:
            order_id: Order identifier
            code: Gateway failure code
            message: Gateway failure message

        Returns:
            bool: True if the order was moved to FAILED, False if it was no
            longer pending

        Raises:
            OrderNotFoundError: If the order does not exist
            StoreError: If the store is unavailable
        """
        aggregate = await self.store.get_by_order_id(order_id)
        if aggregate is None:
            raise OrderNotFoundError(order_id)

        order, payment = aggregate.order, aggregate.payment
        applied = False
        if order.status == OrderStatus.PENDING and (
            payment is None or payment.status == PaymentStatus.PENDING
        ):
            applied = await self.store.conditionally_transition(
                order_id,
                expected_order_status=OrderStatus.PENDING,
                expected_payment_status=PaymentStatus.PENDING if payment else None,
                new_order_status=OrderStatus.FAILED,
                new_payment_fields={"status": PaymentStatus.FAILED} if payment else None,
                audit=TransitionAudit(
                    event_type="payment.failed",
                    event_data={"code": code, "message": message},
                ),
            )

        metrics.record_payment_failure(applied)
        logger.info(
            "payment_failure_recorded",
            order_id=order_id,
            applied=applied,
            failure_code=code,
        )

        if applied:
            self.notifier.payment_failed(dataclasses.replace(order, status=OrderStatus.FAILED))
        return applied
