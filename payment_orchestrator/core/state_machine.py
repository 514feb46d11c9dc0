"""
Order and payment status model.

Encodes the directed transition graph for orders and the cancellation
eligibility rules that sit on top of it.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPING = "SHIPPING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"


class CancellationEligibility(Enum):
    """Outcome of the cancellation eligibility check."""

    ELIGIBLE = "eligible"
    ALREADY_CANCELED = "already_canceled"
    WINDOW_EXPIRED = "window_expired"
    NOT_CANCELABLE = "not_cancelable"


_BASE_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPING, OrderStatus.CANCELED}),
    # Shipping orders may still be canceled inside the cancellation window.
    OrderStatus.SHIPPING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.CANCELED})


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps; they are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStateMachine:
    """
    Transition rules for orders.

    The COMPLETED -> CANCELED edge overrides normal terminality and is only
    present while ``allow_completed_cancellation`` is on; completed orders are
    then cancelable at any age. Other cancelable statuses must be inside the
    cancellation window unless listed in ``window_exempt_statuses``.
    """

    def __init__(
        self,
        allow_completed_cancellation: bool = True,
        cancellation_window: timedelta = timedelta(hours=24),
        window_exempt_statuses: Iterable[OrderStatus] = (OrderStatus.PENDING,),
    ):
        self.allow_completed_cancellation = allow_completed_cancellation
        self.cancellation_window = cancellation_window
        self.window_exempt_statuses = frozenset(OrderStatus(s) for s in window_exempt_statuses)
        self._transitions = dict(_BASE_TRANSITIONS)
        if allow_completed_cancellation:
            self._transitions[OrderStatus.COMPLETED] = frozenset({OrderStatus.CANCELED})

    def allowed_targets(self, current: OrderStatus) -> FrozenSet[OrderStatus]:
        """Statuses reachable from ``current`` in one step."""
        return self._transitions[OrderStatus(current)]

    def can_transition(self, current: OrderStatus, target: OrderStatus) -> bool:
        """Check whether ``current -> target`` is a legal edge."""
        return OrderStatus(target) in self.allowed_targets(current)

    def cancellation_eligibility(
        self, current: OrderStatus, created_at: datetime, now: datetime
    ) -> CancellationEligibility:
        """
        Decide whether an order in ``current`` state may be canceled at ``now``.

        Args:
            current: Current order status
            created_at: Order creation time
            now: Evaluation time (timezone-aware)

        Returns:
            CancellationEligibility: Eligibility verdict
        """
        current = OrderStatus(current)

        if current == OrderStatus.CANCELED:
            return CancellationEligibility.ALREADY_CANCELED

        if not self.can_transition(current, OrderStatus.CANCELED):
            return CancellationEligibility.NOT_CANCELABLE

        if current == OrderStatus.COMPLETED or current in self.window_exempt_statuses:
            return CancellationEligibility.ELIGIBLE

        if _as_utc(now) - _as_utc(created_at) > self.cancellation_window:
            return CancellationEligibility.WINDOW_EXPIRED

        return CancellationEligibility.ELIGIBLE
