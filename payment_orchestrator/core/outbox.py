"""
Outbox relay for order-management backend sync.

Confirmed payments are written to the outbox in the same transaction that
records them. The confirmation saga tries the push once inline; this relay
retries whatever is still unpublished, giving at-least-once delivery.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.database.connection import get_session_factory
from payment_orchestrator.database.models import OutboxEvent
from payment_orchestrator.database.store import PAYMENT_CONFIRMED_EVENT
from payment_orchestrator.integrations.secondary_backend import (
    PushOutcome,
    SecondaryBackendPropagator,
)
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OutboxRelay:
    """
    Relays pending ``order.payment_confirmed`` events to the backend.

    1. Read unpublished events, oldest first
    2. Push each through the propagator
    3. Mark delivered ones published; record attempts on the rest
    """

    def __init__(
        self,
        propagator: SecondaryBackendPropagator,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 5.0,
    ):
        """
        Initialize outbox relay.

        Args:
            propagator: Order-management backend propagator
            session_factory: Optional session factory (defaults to the global one)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
        """
        self.propagator = propagator
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_relay_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.event_type == PAYMENT_CONFIRMED_EVENT,
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _relay_event(self, event: OutboxEvent) -> PushOutcome:
        payload = event.payload or {}
        return await self.propagator.push_confirmation(
            order_id=payload.get("order_id", event.aggregate_id),
            payment_key=payload.get("payment_key"),
            method=payload.get("method"),
            gateway_payload=payload.get("gateway_payload"),
        )

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        start_time = time.monotonic()
        try:
            async with self.session_factory() as db:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids: List[int] = []
                for event in events:
                    outcome = await self._relay_event(event)
                    if outcome == PushOutcome.RETRYABLE_ERROR:
                        await db.execute(
                            update(OutboxEvent)
                            .where(OutboxEvent.id == event.id)
                            .values(
                                attempts=OutboxEvent.attempts + 1,
                                last_error=outcome.value,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        logger.warning(
                            "outbox_event_relay_failed",
                            event_id=event.id,
                            aggregate_id=event.aggregate_id,
                            attempts=event.attempts + 1,
                        )
                    else:
                        published_ids.append(event.id)
                        metrics.record_outbox_event_published(event.event_type)

                if published_ids:
                    await db.execute(
                        update(OutboxEvent)
                        .where(OutboxEvent.id.in_(published_ids))
                        .values(published=True, published_at=datetime.now(timezone.utc))
                        .execution_options(synchronize_session=False)
                    )
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )
                return len(published_ids)

        except SQLAlchemyError as e:
            logger.error("outbox_batch_processing_error", error=str(e))
            return 0
        finally:
            metrics.record_outbox_batch(time.monotonic() - start_time)

    async def get_pending_count(self) -> int:
        """Count unpublished events and publish the gauge."""
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False  # noqa: E712
            )
            count = (await db.execute(stmt)).scalar_one()
        metrics.set_outbox_queue_depth(count)
        return count

    async def start(self) -> None:
        """Poll the outbox until ``stop`` is called."""
        self._running = True
        logger.info("outbox_relay_started")

        try:
            while self._running:
                published_count = await self.process_batch()
                try:
                    await self.get_pending_count()
                except SQLAlchemyError as e:
                    logger.warning("outbox_depth_check_failed", error=str(e))

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # More rows may be waiting; poll again straight away.
                    await asyncio.sleep(0.1)
        finally:
            logger.info("outbox_relay_stopped")

    def stop(self) -> None:
        """Stop the relay loop after the current batch."""
        self._running = False
        logger.info("outbox_relay_stop_requested")
