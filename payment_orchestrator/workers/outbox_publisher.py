"""
Outbox relay worker.

Runs as its own process and keeps pushing confirmed payments that the
confirmation saga could not deliver to the order-management backend.

    python -m payment_orchestrator.workers.outbox_publisher
"""
import asyncio
import signal

import structlog

from payment_orchestrator.config import get_settings
from payment_orchestrator.core.outbox import OutboxRelay
from payment_orchestrator.database.connection import close_db
from payment_orchestrator.integrations.secondary_backend import SecondaryBackendPropagator
from payment_orchestrator.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """Run the outbox relay until SIGINT/SIGTERM."""
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting")

    propagator = SecondaryBackendPropagator(
        base_url=settings.secondary_backend_url,
        token=settings.secondary_backend_token,
        timeout_seconds=settings.secondary_backend_timeout_seconds,
    )
    if not propagator.enabled:
        logger.warning("secondary_backend_not_configured")

    relay = OutboxRelay(
        propagator=propagator,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relay.stop)

    try:
        await relay.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await propagator.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    """Console script entry point."""
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
