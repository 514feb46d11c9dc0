"""
Requests and results exchanged with the orchestrators.

Every saga outcome, including the consistency-risk ones, is reported as a
result value; orchestrators only raise for infrastructure failures that
happen before any money has moved.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from payment_orchestrator.core.state_machine import OrderStatus, PaymentStatus


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    CONFIRMED_WITHOUT_SECONDARY_SYNC = "CONFIRMED_WITHOUT_SECONDARY_SYNC"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    PAYMENT_NOT_COMPLETED = "PAYMENT_NOT_COMPLETED"
    GATEWAY_REJECTED = "GATEWAY_REJECTED"
    LOCAL_PERSIST_FAILED_AFTER_CAPTURE = "LOCAL_PERSIST_FAILED_AFTER_CAPTURE"
    INVALID_REQUEST = "INVALID_REQUEST"


class CancellationOutcome(str, Enum):
    CANCELED = "CANCELED"
    ALREADY_CANCELED = "ALREADY_CANCELED"
    FORBIDDEN = "FORBIDDEN"
    WINDOW_EXPIRED = "WINDOW_EXPIRED"
    CANCEL_REJECTED = "CANCEL_REJECTED"
    NOT_FOUND = "NOT_FOUND"
    LOCAL_PERSIST_FAILED_AFTER_REVERSAL = "LOCAL_PERSIST_FAILED_AFTER_REVERSAL"


class CancelRejectReason(str, Enum):
    """Stable reasons reported with ``CANCEL_REJECTED``."""

    NOT_CANCELABLE = "NOT_CANCELABLE"
    AUTHORIZATION_MISSING = "AUTHORIZATION_MISSING"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_CANCELED = "ALREADY_CANCELED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


@dataclass(frozen=True)
class ConfirmationRequest:
    """Client-submitted "payment was authorized" signal. May arrive more than once."""

    payment_key: Optional[str]
    order_id: Optional[str]
    amount: Optional[int]


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as asserted by the upstream auth layer."""

    user_id: Optional[str]
    roles: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class CancellationRequest:
    order_id: str
    principal: Principal
    reason: Optional[str] = None


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    order_id: Optional[str] = None
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    payment_key: Optional[str] = None
    method: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    secondary_synced: Optional[bool] = None
    # Populated only when an automatic reversal was attempted after a
    # capture could not be recorded.
    reversal_attempted: bool = False
    reversal_succeeded: Optional[bool] = None
    gateway_payload: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_success(self) -> bool:
        return self.outcome in (
            ConfirmationOutcome.CONFIRMED,
            ConfirmationOutcome.CONFIRMED_WITHOUT_SECONDARY_SYNC,
            ConfirmationOutcome.ALREADY_CONFIRMED,
        )


@dataclass
class CancellationResult:
    outcome: CancellationOutcome
    order_id: str
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    reason: Optional[CancelRejectReason] = None
    message: Optional[str] = None
    gateway_reversed: bool = False
