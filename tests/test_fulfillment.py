"""
Tests for fulfillment transitions.
"""
import pytest

from payment_orchestrator.core.exceptions import InvalidTransitionError, OrderNotFoundError
from payment_orchestrator.core.fulfillment import FulfillmentService
from payment_orchestrator.core.state_machine import OrderStatus
from payment_orchestrator.database.store import OrderPaymentStore

from .conftest import SeedOrder


class TestFulfillmentService:
    """Test suite for FulfillmentService."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_to_shipping_to_completed(
        self, store: OrderPaymentStore, seed_order: SeedOrder
    ) -> None:
        await seed_order("O1", status=OrderStatus.PAID)
        service = FulfillmentService(store)

        shipped = await service.advance("O1", OrderStatus.SHIPPING, actor="seller-1")
        completed = await service.advance("O1", OrderStatus.COMPLETED, actor="seller-1")

        assert shipped.status == OrderStatus.SHIPPING
        assert completed.status == OrderStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_cannot_ship(self, store: OrderPaymentStore, seed_order: SeedOrder) -> None:
        await seed_order("O1")

        with pytest.raises(InvalidTransitionError):
            await FulfillmentService(store).advance("O1", OrderStatus.SHIPPING)

        aggregate = await store.get_by_order_id("O1")
        assert aggregate.order.status == OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_skip_shipping(self, store: OrderPaymentStore, seed_order: SeedOrder) -> None:
        await seed_order("O1", status=OrderStatus.PAID)

        with pytest.raises(InvalidTransitionError):
            await FulfillmentService(store).advance("O1", OrderStatus.COMPLETED)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_is_not_a_fulfillment_step(
        self, store: OrderPaymentStore, seed_order: SeedOrder
    ) -> None:
        await seed_order("O1", status=OrderStatus.PAID)

        with pytest.raises(InvalidTransitionError):
            await FulfillmentService(store).advance("O1", OrderStatus.CANCELED)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_status_rejected(self, store: OrderPaymentStore, seed_order: SeedOrder) -> None:
        await seed_order("O1", status=OrderStatus.SHIPPING)

        with pytest.raises(InvalidTransitionError, match="already SHIPPING"):
            await FulfillmentService(store).advance("O1", "SHIPPING")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, store: OrderPaymentStore) -> None:
        with pytest.raises(OrderNotFoundError):
            await FulfillmentService(store).advance("missing", OrderStatus.SHIPPING)
