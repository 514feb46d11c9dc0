"""Seller/admin fulfillment transitions (PAID -> SHIPPING -> COMPLETED)."""
from typing import Optional

import structlog

from payment_orchestrator.core.exceptions import InvalidTransitionError, OrderNotFoundError
from payment_orchestrator.core.state_machine import OrderStateMachine, OrderStatus
from payment_orchestrator.database.store import OrderPaymentStore, OrderRecord, TransitionAudit

logger = structlog.get_logger(__name__)

# Cancellation and payment states have their own writers.
FULFILLMENT_TARGETS = frozenset({OrderStatus.SHIPPING, OrderStatus.COMPLETED})


class FulfillmentService:
    """Moves paid orders through shipping to completion."""

    def __init__(
        self,
        store: OrderPaymentStore,
        state_machine: Optional[OrderStateMachine] = None,
    ):
        self.store = store
        self.state_machine = state_machine or OrderStateMachine()

    async def advance(
        self, order_id: str, new_status: OrderStatus, actor: Optional[str] = None
    ) -> OrderRecord:
        """
        Advance an order's fulfillment status.

        Args:
            order_id: Order identifier
            new_status: SHIPPING or COMPLETED
            actor: Who requested the change, for the audit trail

        Returns:
            OrderRecord: The order after the transition

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidTransitionError: If the change is not a legal fulfillment step
                or the order changed concurrently
        """
        new_status = OrderStatus(new_status)
        aggregate = await self.store.get_by_order_id(order_id)
        if aggregate is None:
            raise OrderNotFoundError(order_id)

        current = aggregate.order.status
        if current == new_status:
            raise InvalidTransitionError(f"Order {order_id} is already {current.value}")
        if new_status not in FULFILLMENT_TARGETS or not self.state_machine.can_transition(
            current, new_status
        ):
            raise InvalidTransitionError(
                f"Cannot move order {order_id} from {current.value} to {new_status.value}"
            )

        applied = await self.store.conditionally_transition(
            order_id,
            expected_order_status=current,
            expected_payment_status=None,
            new_order_status=new_status,
            audit=TransitionAudit(
                event_type=f"order.{new_status.value.lower()}",
                event_data={"actor": actor},
            ),
        )
        if not applied:
            raise InvalidTransitionError(f"Order {order_id} changed concurrently; reload and retry")

        logger.info(
            "order_fulfillment_advanced",
            order_id=order_id,
            from_status=current.value,
            to_status=new_status.value,
        )

        refreshed = await self.store.get_by_order_id(order_id)
        if refreshed is None:
            raise OrderNotFoundError(order_id)
        return refreshed.order
