"""
Order cancellation saga.

The gateway ledger is the source of truth for money: an order is only marked
CANCELED locally when no capture exists or the gateway has confirmed the
reversal. A reversal that cannot be recorded locally is reported as
LOCAL_PERSIST_FAILED_AFTER_REVERSAL and raised as a reconciliation incident.
"""
import dataclasses
import uuid
from datetime import datetime, timezone
from typing import Callable, FrozenSet, Iterable, Optional

import structlog

from payment_orchestrator.core.results import (
    CancellationOutcome,
    CancellationRequest,
    CancellationResult,
    CancelRejectReason,
    Principal,
)
from payment_orchestrator.core.saga import ShieldedSaga
from payment_orchestrator.core.state_machine import (
    CancellationEligibility,
    OrderStateMachine,
    OrderStatus,
    PaymentStatus,
)
from payment_orchestrator.database.store import (
    OrderPaymentStore,
    OrderRecord,
    StoreError,
    TransitionAudit,
)
from payment_orchestrator.integrations.gateway_client import GatewayClient, GatewayError
from payment_orchestrator.integrations.notifications import BackgroundNotifier
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_CANCEL_REASON = "Order canceled at customer request"

_PROVIDER_CODE_REASONS = {
    "FORBIDDEN_REQUEST": CancelRejectReason.AUTHORIZATION_MISSING,
    "UNAUTHORIZED_KEY": CancelRejectReason.AUTHORIZATION_MISSING,
    "NOT_FOUND_PAYMENT": CancelRejectReason.NOT_FOUND,
    "ALREADY_CANCELED_PAYMENT": CancelRejectReason.ALREADY_CANCELED,
    "PROVIDER_ERROR": CancelRejectReason.PROVIDER_ERROR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rejection_reason(error: GatewayError) -> CancelRejectReason:
    """Map a gateway failure to a stable cancellation rejection reason."""
    reason = _PROVIDER_CODE_REASONS.get(error.code)
    if reason is not None:
        return reason
    if error.status_code in (401, 403):
        return CancelRejectReason.AUTHORIZATION_MISSING
    if error.is_retryable:
        return CancelRejectReason.GATEWAY_UNAVAILABLE
    return CancelRejectReason.GATEWAY_ERROR


class CancellationOrchestrator(ShieldedSaga):
    """Cancellation saga over gateway and primary store."""

    def __init__(
        self,
        store: OrderPaymentStore,
        gateway: GatewayClient,
        notifier: BackgroundNotifier,
        state_machine: Optional[OrderStateMachine] = None,
        override_roles: Iterable[str] = ("admin",),
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the cancellation orchestrator.

        Args:
            store: Order/Payment store
            gateway: Payment gateway client
            notifier: Fire-and-forget notification wrapper
            state_machine: Transition and eligibility rules
            override_roles: Roles allowed to cancel any order
            clock: Source of "now" for the cancellation window
        """
        super().__init__()
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.state_machine = state_machine or OrderStateMachine()
        self.override_roles: FrozenSet[str] = frozenset(override_roles)
        self.clock = clock

    def is_authorized(self, principal: Principal, order: OrderRecord) -> bool:
        """Owners may cancel their own orders; override roles may cancel any order."""
        if self.override_roles & principal.roles:
            return True
        return order.user_id is not None and principal.user_id == order.user_id

    async def cancel(self, request: CancellationRequest) -> CancellationResult:
        """
        Cancel an order, reversing its payment at the gateway first.

        Args:
            request: Order id, requesting principal and optional reason

        Returns:
            CancellationResult: Outcome and resulting state

        Raises:
            StoreError: If the store fails before any money has moved
        """
        return await self._run_shielded(
            self._cancel_and_record(request), name=f"cancel:{request.order_id}"
        )

    async def _cancel_and_record(self, request: CancellationRequest) -> CancellationResult:
        result = await self._cancel(request)
        metrics.record_cancellation(result.outcome.value)
        return result

    async def _cancel(self, request: CancellationRequest) -> CancellationResult:
        correlation_id = str(uuid.uuid4())
        log = logger.bind(order_id=request.order_id, correlation_id=correlation_id)

        aggregate = await self.store.get_by_order_id(request.order_id)
        if aggregate is None:
            log.info("cancellation_rejected", outcome=CancellationOutcome.NOT_FOUND.value)
            return CancellationResult(CancellationOutcome.NOT_FOUND, request.order_id)

        order, payment = aggregate.order, aggregate.payment
        payment_status = payment.status if payment else None

        def rejected(outcome: CancellationOutcome, **kwargs) -> CancellationResult:
            log.info("cancellation_rejected", outcome=outcome.value, order_status=order.status.value)
            return CancellationResult(
                outcome,
                order.id,
                order_status=order.status,
                payment_status=payment_status,
                **kwargs,
            )

        if not self.is_authorized(request.principal, order):
            return rejected(CancellationOutcome.FORBIDDEN)

        eligibility = self.state_machine.cancellation_eligibility(
            order.status, order.created_at, self.clock()
        )
        if eligibility == CancellationEligibility.ALREADY_CANCELED:
            return rejected(CancellationOutcome.ALREADY_CANCELED)
        if eligibility == CancellationEligibility.WINDOW_EXPIRED:
            return rejected(CancellationOutcome.WINDOW_EXPIRED)
        if eligibility == CancellationEligibility.NOT_CANCELABLE:
            return rejected(
                CancellationOutcome.CANCEL_REJECTED,
                reason=CancelRejectReason.NOT_CANCELABLE,
                message=f"Orders in status {order.status.value} cannot be canceled",
            )

        reason = request.reason or DEFAULT_CANCEL_REASON

        # Gateway reversal, only when money was captured
        gateway_reversed = False
        if payment is not None and payment.payment_key and payment.status != PaymentStatus.CANCELED:
            try:
                reversal = await self.gateway.cancel(payment.payment_key, order.total_amount, reason)
            except GatewayError as e:
                return rejected(
                    CancellationOutcome.CANCEL_REJECTED,
                    reason=rejection_reason(e),
                    message=e.message,
                )
            if not reversal.approved:
                return rejected(
                    CancellationOutcome.CANCEL_REJECTED,
                    reason=CancelRejectReason.GATEWAY_ERROR,
                    message=f"Gateway reported status {reversal.raw.get('status')}",
                )
            gateway_reversed = True
            log.info("payment_reversed", amount=order.total_amount)

        update_payment = payment is not None and payment.status != PaymentStatus.CANCELED
        try:
            applied = await self.store.conditionally_transition(
                order.id,
                expected_order_status=order.status,
                expected_payment_status=payment.status if update_payment else None,
                new_order_status=OrderStatus.CANCELED,
                new_payment_fields={"status": PaymentStatus.CANCELED} if update_payment else None,
                audit=TransitionAudit(
                    event_type="order.canceled",
                    event_data={
                        "reason": reason,
                        "gateway_reversed": gateway_reversed,
                        "requested_by": request.principal.user_id,
                    },
                    correlation_id=correlation_id,
                ),
            )
        except StoreError as e:
            if not gateway_reversed:
                raise
            return self._persist_failed(order, payment_status, log, str(e))

        if not applied:
            current = None
            try:
                current = await self.store.get_by_order_id(order.id)
            except StoreError as e:
                log.error("cancellation_reread_failed", error=str(e))
            if current is not None and current.order.status == OrderStatus.CANCELED:
                log.info("cancellation_raced")
                return CancellationResult(
                    CancellationOutcome.ALREADY_CANCELED,
                    order.id,
                    order_status=current.order.status,
                    payment_status=current.payment.status if current.payment else None,
                    gateway_reversed=gateway_reversed,
                )
            if gateway_reversed:
                return self._persist_failed(
                    order, payment_status, log, "order changed while the reversal was in flight"
                )
            return rejected(
                CancellationOutcome.CANCEL_REJECTED,
                reason=CancelRejectReason.CONCURRENT_MODIFICATION,
                message="Order changed concurrently; retry the cancellation",
            )

        log.info("order_canceled", gateway_reversed=gateway_reversed)
        self.notifier.order_canceled(dataclasses.replace(order, status=OrderStatus.CANCELED))

        return CancellationResult(
            CancellationOutcome.CANCELED,
            order.id,
            order_status=OrderStatus.CANCELED,
            payment_status=PaymentStatus.CANCELED if payment is not None else None,
            gateway_reversed=gateway_reversed,
        )

    @staticmethod
    def _persist_failed(
        order: OrderRecord,
        payment_status: Optional[PaymentStatus],
        log: structlog.stdlib.BoundLogger,
        error: str,
    ) -> CancellationResult:
        incident = CancellationOutcome.LOCAL_PERSIST_FAILED_AFTER_REVERSAL.value
        log.critical(
            "payment_reversed_but_not_recorded",
            incident=incident,
            amount=order.total_amount,
            error=error,
        )
        metrics.record_reconciliation_incident(incident)
        return CancellationResult(
            CancellationOutcome.LOCAL_PERSIST_FAILED_AFTER_REVERSAL,
            order.id,
            order_status=order.status,
            payment_status=payment_status,
            message=error,
            gateway_reversed=True,
        )
