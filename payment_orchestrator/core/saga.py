"""
Shared plumbing for the confirmation and cancellation sagas.

Once a saga has been started it runs to completion even if the caller stops
waiting (client disconnect, request timeout): money may already be moving at
the gateway and the local record has to follow it.
"""
import asyncio
from typing import Any, Coroutine, Set, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ShieldedSaga:
    """Base class running each saga as a task shielded from caller cancellation."""

    def __init__(self) -> None:
        self._inflight: Set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def _run_shielded(self, coro: Coroutine[Any, Any, T], name: str) -> T:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._on_saga_done)
        return await asyncio.shield(task)

    def _on_saga_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "saga_failed",
                saga=task.get_name(),
                error=str(error),
                error_class=type(error).__name__,
            )

    async def drain(self) -> None:
        """Wait for sagas still running after their callers went away."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
