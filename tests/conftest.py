"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database per test; the gateway, the
order-management backend and the notification service are mocked.
"""
import os

os.environ.setdefault("GATEWAY_SECRET_KEY", "test_sk_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payment_orchestrator.config.settings import GatewayConfig
from payment_orchestrator.core.cancellation import CancellationOrchestrator
from payment_orchestrator.core.confirmation import ConfirmationOrchestrator
from payment_orchestrator.core.state_machine import OrderStateMachine, OrderStatus, PaymentStatus
from payment_orchestrator.database.connection import create_session_factory, init_db
from payment_orchestrator.database.store import NewOrderItem, OrderAggregate, OrderPaymentStore
from payment_orchestrator.integrations.gateway_client import (
    GatewayCancellation,
    GatewayClient,
    GatewayConfirmation,
)
from payment_orchestrator.integrations.notifications import (
    BackgroundNotifier,
    NotificationDispatcher,
)
from payment_orchestrator.integrations.secondary_backend import (
    PushOutcome,
    SecondaryBackendPropagator,
)

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

SeedOrder = Callable[..., Awaitable[OrderAggregate]]


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrent request scenarios")
    config.addinivalue_line("markers", "integration: end-to-end through the HTTP API")


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/orders.db", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> OrderPaymentStore:
    return OrderPaymentStore(session_factory=session_factory)


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        secret_key="test_sk_fake_key_for_testing",
        api_url="https://gateway.test/v1",
        timeout_seconds=1.0,
        max_attempts=3,
        test_payment_key_prefixes=("tsi_", "tgen_", "test_"),
        live_payment_key_prefixes=("tgen_",),
        session_id_prefix="si_",
    )


@pytest_asyncio.fixture
async def gateway(gateway_config: GatewayConfig) -> AsyncGenerator[GatewayClient, Any]:
    """
    Real gateway client (key classification) with the network calls mocked.

    ``confirm`` approves a card payment and ``cancel`` approves the reversal
    unless a test overrides them.
    """
    def unexpected(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected gateway request {request.url}")

    client = GatewayClient(
        gateway_config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(unexpected)),
    )
    client.confirm = AsyncMock(
        return_value=GatewayConfirmation(
            approved=True, method="CARD", raw={"status": "DONE", "method": "CARD"}
        )
    )
    client.cancel = AsyncMock(
        return_value=GatewayCancellation(approved=True, raw={"status": "CANCELED"})
    )
    yield client
    await client._client.aclose()


@pytest.fixture
def propagator() -> AsyncMock:
    mock = AsyncMock(spec=SecondaryBackendPropagator)
    mock.push_confirmation.return_value = PushOutcome.OK
    return mock


@pytest.fixture
def dispatcher() -> AsyncMock:
    return AsyncMock(spec=NotificationDispatcher)


@pytest_asyncio.fixture
async def notifier(dispatcher: AsyncMock) -> AsyncGenerator[BackgroundNotifier, Any]:
    notifier = BackgroundNotifier(dispatcher)
    yield notifier
    await notifier.drain()


@pytest.fixture
def confirmation(
    store: OrderPaymentStore,
    gateway: GatewayClient,
    propagator: AsyncMock,
    notifier: BackgroundNotifier,
) -> ConfirmationOrchestrator:
    return ConfirmationOrchestrator(
        store=store,
        gateway=gateway,
        propagator=propagator,
        notifier=notifier,
        clock=lambda: NOW,
    )


@pytest.fixture
def cancellation(
    store: OrderPaymentStore,
    gateway: GatewayClient,
    notifier: BackgroundNotifier,
) -> CancellationOrchestrator:
    return CancellationOrchestrator(
        store=store,
        gateway=gateway,
        notifier=notifier,
        state_machine=OrderStateMachine(cancellation_window=timedelta(hours=24)),
        override_roles=("admin",),
        clock=lambda: NOW,
    )


@pytest.fixture
def seed_order(store: OrderPaymentStore) -> SeedOrder:
    """
    Create an order and walk it to ``status`` through legal transitions.

    PAID and later orders carry a COMPLETED payment with ``payment_key``.
    """

    async def _seed(
        order_id: str,
        status: OrderStatus = OrderStatus.PENDING,
        total_amount: int = 39000,
        user_id: Optional[str] = "user-1",
        created_at: Optional[datetime] = None,
        payment_key: str = "tgen_seeded_key",
    ) -> OrderAggregate:
        await store.create_pending_order(
            order_id,
            total_amount=total_amount,
            items=[
                NewOrderItem(
                    product_id="sku-1",
                    product_name="Hand drip kettle",
                    quantity=1,
                    unit_price=total_amount,
                )
            ],
            user_id=user_id,
            customer_name="Kim Minji",
            customer_phone="010-0000-0000",
            created_at=created_at or NOW - timedelta(hours=1),
        )

        if status == OrderStatus.FAILED:
            await store.conditionally_transition(
                order_id,
                OrderStatus.PENDING,
                PaymentStatus.PENDING,
                OrderStatus.FAILED,
                {"status": PaymentStatus.FAILED},
            )
        elif status == OrderStatus.CANCELED:
            await store.conditionally_transition(
                order_id,
                OrderStatus.PENDING,
                PaymentStatus.PENDING,
                OrderStatus.CANCELED,
                {"status": PaymentStatus.CANCELED},
            )
        elif status != OrderStatus.PENDING:
            await store.conditionally_transition(
                order_id,
                OrderStatus.PENDING,
                PaymentStatus.PENDING,
                OrderStatus.PAID,
                {
                    "status": PaymentStatus.COMPLETED,
                    "payment_key": payment_key,
                    "method": "CARD",
                    "approved_at": NOW - timedelta(minutes=50),
                },
            )
            path = [OrderStatus.PAID, OrderStatus.SHIPPING, OrderStatus.COMPLETED]
            for previous, target in zip(path, path[1:]):
                if path.index(status) < path.index(target):
                    break
                await store.conditionally_transition(order_id, previous, None, target)

        aggregate = await store.get_by_order_id(order_id)
        assert aggregate is not None
        assert aggregate.order.status == status
        return aggregate

    return _seed
