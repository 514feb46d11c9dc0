"""Core order/payment orchestration logic."""
from .state_machine import (
    CancellationEligibility,
    OrderStateMachine,
    OrderStatus,
    PaymentStatus,
)

__all__ = [
    "CancellationEligibility",
    "OrderStateMachine",
    "OrderStatus",
    "PaymentStatus",
]
