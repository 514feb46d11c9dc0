"""
Unit tests for the order state machine.
"""
from datetime import datetime, timedelta, timezone

import pytest

from payment_orchestrator.core.state_machine import (
    CancellationEligibility,
    OrderStateMachine,
    OrderStatus,
)

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


class TestTransitions:
    """Test suite for the transition graph."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PAID),
            (OrderStatus.PENDING, OrderStatus.FAILED),
            (OrderStatus.PENDING, OrderStatus.CANCELED),
            (OrderStatus.PAID, OrderStatus.SHIPPING),
            (OrderStatus.PAID, OrderStatus.CANCELED),
            (OrderStatus.SHIPPING, OrderStatus.COMPLETED),
            (OrderStatus.SHIPPING, OrderStatus.CANCELED),
            (OrderStatus.COMPLETED, OrderStatus.CANCELED),
        ],
    )
    def test_legal_edges(self, current: OrderStatus, target: OrderStatus) -> None:
        assert OrderStateMachine().can_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PAID, OrderStatus.PENDING),
            (OrderStatus.PAID, OrderStatus.COMPLETED),
            (OrderStatus.PENDING, OrderStatus.SHIPPING),
            (OrderStatus.CANCELED, OrderStatus.PAID),
            (OrderStatus.FAILED, OrderStatus.PENDING),
            (OrderStatus.FAILED, OrderStatus.CANCELED),
        ],
    )
    def test_illegal_edges(self, current: OrderStatus, target: OrderStatus) -> None:
        assert not OrderStateMachine().can_transition(current, target)

    @pytest.mark.unit
    def test_terminal_states_have_no_targets(self) -> None:
        machine = OrderStateMachine()
        assert machine.allowed_targets(OrderStatus.CANCELED) == frozenset()
        assert machine.allowed_targets(OrderStatus.FAILED) == frozenset()

    @pytest.mark.unit
    def test_completed_is_terminal_without_override(self) -> None:
        machine = OrderStateMachine(allow_completed_cancellation=False)
        assert not machine.can_transition(OrderStatus.COMPLETED, OrderStatus.CANCELED)
        assert machine.allowed_targets(OrderStatus.COMPLETED) == frozenset()

    @pytest.mark.unit
    def test_accepts_raw_status_strings(self) -> None:
        assert OrderStateMachine().can_transition("PAID", "SHIPPING")


class TestCancellationEligibility:
    """Test suite for cancellation eligibility."""

    @pytest.mark.unit
    def test_paid_inside_window_is_eligible(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.PAID, NOW - timedelta(hours=2), NOW
        )
        assert verdict == CancellationEligibility.ELIGIBLE

    @pytest.mark.unit
    def test_paid_outside_window_expired(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.PAID, NOW - timedelta(hours=30), NOW
        )
        assert verdict == CancellationEligibility.WINDOW_EXPIRED

    @pytest.mark.unit
    def test_window_boundary_is_inclusive(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.SHIPPING, NOW - timedelta(hours=24), NOW
        )
        assert verdict == CancellationEligibility.ELIGIBLE

    @pytest.mark.unit
    def test_shipping_outside_window_expired(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.SHIPPING, NOW - timedelta(hours=25), NOW
        )
        assert verdict == CancellationEligibility.WINDOW_EXPIRED

    @pytest.mark.unit
    def test_pending_ignores_window(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.PENDING, NOW - timedelta(days=10), NOW
        )
        assert verdict == CancellationEligibility.ELIGIBLE

    @pytest.mark.unit
    def test_completed_eligible_at_any_age(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.COMPLETED, NOW - timedelta(days=30), NOW
        )
        assert verdict == CancellationEligibility.ELIGIBLE

    @pytest.mark.unit
    def test_completed_not_cancelable_without_override(self) -> None:
        machine = OrderStateMachine(allow_completed_cancellation=False)
        verdict = machine.cancellation_eligibility(
            OrderStatus.COMPLETED, NOW - timedelta(hours=1), NOW
        )
        assert verdict == CancellationEligibility.NOT_CANCELABLE

    @pytest.mark.unit
    def test_already_canceled(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.CANCELED, NOW - timedelta(hours=1), NOW
        )
        assert verdict == CancellationEligibility.ALREADY_CANCELED

    @pytest.mark.unit
    def test_failed_not_cancelable(self) -> None:
        verdict = OrderStateMachine().cancellation_eligibility(
            OrderStatus.FAILED, NOW - timedelta(hours=1), NOW
        )
        assert verdict == CancellationEligibility.NOT_CANCELABLE

    @pytest.mark.unit
    def test_exempt_statuses_are_configurable(self) -> None:
        machine = OrderStateMachine(
            window_exempt_statuses=[OrderStatus.PENDING, OrderStatus.PAID]
        )
        verdict = machine.cancellation_eligibility(
            OrderStatus.PAID, NOW - timedelta(hours=30), NOW
        )
        assert verdict == CancellationEligibility.ELIGIBLE

    @pytest.mark.unit
    def test_naive_created_at_treated_as_utc(self) -> None:
        created_at = (NOW - timedelta(hours=30)).replace(tzinfo=None)
        verdict = OrderStateMachine().cancellation_eligibility(OrderStatus.PAID, created_at, NOW)
        assert verdict == CancellationEligibility.WINDOW_EXPIRED
