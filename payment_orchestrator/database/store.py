"""
Order/Payment store.

Primary system of record for orders and payments. Every status change goes
through ``conditionally_transition``: a single local transaction whose UPDATEs
are guarded by the expected prior statuses, so a concurrent writer that lost
the race sees ``False`` instead of overwriting state.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from payment_orchestrator.core.state_machine import OrderStatus, PaymentStatus
from payment_orchestrator.database.connection import get_session_factory
from payment_orchestrator.database.models import (
    Order,
    OrderItem,
    OutboxEvent,
    Payment,
    PaymentEvent,
)

logger = structlog.get_logger(__name__)

PAYMENT_CONFIRMED_EVENT = "order.payment_confirmed"


class StoreError(Exception):
    """Raised when the primary store cannot complete an operation."""

    pass


@dataclass(frozen=True)
class OrderItemRecord:
    product_id: str
    product_name: str
    quantity: int
    unit_price: int


@dataclass(frozen=True)
class OrderRecord:
    """Read-only snapshot of an order row."""

    id: str
    user_id: Optional[str]
    status: OrderStatus
    total_amount: int
    customer_name: Optional[str]
    customer_phone: Optional[str]
    created_at: datetime
    updated_at: datetime
    items: Tuple[OrderItemRecord, ...] = ()


@dataclass(frozen=True)
class PaymentRecord:
    """Read-only snapshot of a payment row."""

    id: str
    order_id: str
    status: PaymentStatus
    payment_key: Optional[str]
    method: Optional[str]
    approved_at: Optional[datetime]


@dataclass(frozen=True)
class OrderAggregate:
    """An order together with its (optional) payment."""

    order: OrderRecord
    payment: Optional[PaymentRecord] = None


@dataclass
class NewOrderItem:
    product_id: str
    product_name: str
    quantity: int
    unit_price: int


@dataclass
class OutboxMessage:
    """An outbox row to be written alongside a transition."""

    event_type: str
    payload: Dict[str, Any]
    aggregate_type: str = "order"


@dataclass
class TransitionAudit:
    """Audit entry written alongside a transition."""

    event_type: str
    event_data: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _to_order_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        user_id=order.user_id,
        status=OrderStatus(order.status),
        total_amount=order.total_amount,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=tuple(
            OrderItemRecord(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in order.items
        ),
    )


def _to_payment_record(payment: Payment) -> PaymentRecord:
    return PaymentRecord(
        id=payment.id,
        order_id=payment.order_id,
        status=PaymentStatus(payment.status),
        payment_key=payment.payment_key,
        method=payment.method,
        approved_at=payment.approved_at,
    )


class OrderPaymentStore:
    """
    Async store for the Order/Payment aggregate.

    Sessions are opened per operation from the injected session factory; no
    ORM object escapes a session, callers only see frozen records.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Initialize the store.

        Args:
            session_factory: Optional session factory (defaults to the global one)
        """
        self.session_factory = session_factory or get_session_factory()

    async def get_by_order_id(self, order_id: str) -> Optional[OrderAggregate]:
        """
        Load an order and its payment.

        Args:
            order_id: Order identifier

        Returns:
            Optional[OrderAggregate]: The aggregate, or None if the order does not exist

        Raises:
            StoreError: If the store is unavailable
        """
        try:
            async with self.session_factory() as db:
                order_stmt = (
                    select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
                )
                order = (await db.execute(order_stmt)).scalar_one_or_none()
                if order is None:
                    return None

                payment_stmt = select(Payment).where(Payment.order_id == order_id)
                payment = (await db.execute(payment_stmt)).scalar_one_or_none()

                return OrderAggregate(
                    order=_to_order_record(order),
                    payment=_to_payment_record(payment) if payment is not None else None,
                )
        except SQLAlchemyError as e:
            logger.error("store_read_failed", order_id=order_id, error=str(e))
            raise StoreError(f"Failed to load order {order_id}: {e}") from e

    async def conditionally_transition(
        self,
        order_id: str,
        expected_order_status: OrderStatus,
        expected_payment_status: Optional[PaymentStatus],
        new_order_status: OrderStatus,
        new_payment_fields: Optional[Dict[str, Any]] = None,
        audit: Optional[TransitionAudit] = None,
        outbox: Optional[OutboxMessage] = None,
    ) -> bool:
        """
        Atomically move an order (and its payment) to new statuses.

        Both UPDATEs are guarded by the expected prior status. If either guard
        does not match exactly one row the transaction is rolled back and
        nothing changes.

        Args:
            order_id: Order identifier
            expected_order_status: Order status the caller observed
            expected_payment_status: Payment status the caller observed, or None
                when the order has no payment record
            new_order_status: Target order status
            new_payment_fields: Column values for the payment row (e.g. status,
                payment_key, approved_at); ignored when there is no payment
            audit: Optional audit event written in the same transaction
            outbox: Optional outbox message written in the same transaction

        Returns:
            bool: True if the transition was applied

        Raises:
            StoreError: If the store is unavailable or rejects the write
        """
        async with self.session_factory() as db:
            try:
                order_stmt = (
                    update(Order)
                    .where(Order.id == order_id, Order.status == expected_order_status.value)
                    .values(status=new_order_status.value)
                    .execution_options(synchronize_session=False)
                )
                order_result = await db.execute(order_stmt)
                if order_result.rowcount != 1:
                    await db.rollback()
                    logger.info(
                        "transition_guard_mismatch",
                        order_id=order_id,
                        guard="order",
                        expected=expected_order_status.value,
                    )
                    return False

                if expected_payment_status is not None and new_payment_fields:
                    payment_stmt = (
                        update(Payment)
                        .where(
                            Payment.order_id == order_id,
                            Payment.status == expected_payment_status.value,
                        )
                        .values({k: _column_value(v) for k, v in new_payment_fields.items()})
                        .execution_options(synchronize_session=False)
                    )
                    payment_result = await db.execute(payment_stmt)
                    if payment_result.rowcount != 1:
                        await db.rollback()
                        logger.info(
                            "transition_guard_mismatch",
                            order_id=order_id,
                            guard="payment",
                            expected=expected_payment_status.value,
                        )
                        return False

                if audit is not None:
                    db.add(
                        PaymentEvent(
                            order_id=order_id,
                            event_type=audit.event_type,
                            event_data={
                                "from": expected_order_status.value,
                                "to": new_order_status.value,
                                **audit.event_data,
                            },
                            correlation_id=audit.correlation_id,
                        )
                    )

                if outbox is not None:
                    db.add(
                        OutboxEvent(
                            aggregate_id=order_id,
                            aggregate_type=outbox.aggregate_type,
                            event_type=outbox.event_type,
                            payload=outbox.payload,
                            published=False,
                            attempts=0,
                        )
                    )

                await db.commit()

            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(
                    "store_transition_failed",
                    order_id=order_id,
                    to=new_order_status.value,
                    error=str(e),
                )
                raise StoreError(f"Failed to transition order {order_id}: {e}") from e

        logger.info(
            "order_transitioned",
            order_id=order_id,
            from_status=expected_order_status.value,
            to_status=new_order_status.value,
        )
        return True

    async def mark_secondary_synced(self, order_id: str) -> int:
        """
        Mark the pending confirmation push for an order as delivered.

        Args:
            order_id: Order identifier

        Returns:
            int: Number of outbox rows marked published

        Raises:
            StoreError: If the update fails
        """
        try:
            async with self.session_factory() as db:
                stmt = (
                    update(OutboxEvent)
                    .where(
                        OutboxEvent.aggregate_id == order_id,
                        OutboxEvent.event_type == PAYMENT_CONFIRMED_EVENT,
                        OutboxEvent.published == False,  # noqa: E712
                    )
                    .values(published=True, published_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                await db.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error("outbox_mark_synced_failed", order_id=order_id, error=str(e))
            raise StoreError(f"Failed to mark outbox for {order_id}: {e}") from e

    async def create_pending_order(
        self,
        order_id: str,
        total_amount: int,
        items: Sequence[NewOrderItem],
        user_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> OrderAggregate:
        """
        Create an order and its PENDING payment in one transaction.

        This is the checkout write that precedes any gateway interaction.

        Raises:
            StoreError: If the order cannot be created
        """
        created_at = created_at or datetime.now(timezone.utc)
        try:
            async with self.session_factory() as db:
                order = Order(
                    id=order_id,
                    user_id=user_id,
                    status=OrderStatus.PENDING.value,
                    total_amount=total_amount,
                    customer_name=customer_name,
                    customer_phone=customer_phone,
                    created_at=created_at,
                    updated_at=created_at,
                )
                db.add(order)
                line_items: List[OrderItem] = [
                    OrderItem(
                        order_id=order_id,
                        position=position,
                        product_id=item.product_id,
                        product_name=item.product_name,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                    )
                    for position, item in enumerate(items)
                ]
                db.add_all(line_items)
                db.add(Payment(order_id=order_id, status=PaymentStatus.PENDING.value))
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("order_create_failed", order_id=order_id, error=str(e))
            raise StoreError(f"Failed to create order {order_id}: {e}") from e

        logger.info("order_created", order_id=order_id, total_amount=total_amount)
        aggregate = await self.get_by_order_id(order_id)
        if aggregate is None:
            raise StoreError(f"Order {order_id} vanished after creation")
        return aggregate
