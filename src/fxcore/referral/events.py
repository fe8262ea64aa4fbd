"""Transaction-completion event source.

The transaction flow publishes and returns immediately; handlers run on a
separate consumer task, so nothing a handler does can block or fail the
transaction commit path.

Delivery contract: at-least-once. A handler that raises gets the event
again after a backoff (up to max_deliveries), and publishers are free to
publish the same event twice. No ordering is guaranteed across users.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from fxcore.logging import get_logger
from fxcore.models import TransactionEvent

logger = get_logger(__name__)

TransactionHandler = Callable[[TransactionEvent], Awaitable[None]]


class TransactionEventSource(Protocol):
    """Anything that can feed completed transactions to subscribers."""

    def subscribe(self, handler: TransactionHandler) -> None: ...


class QueueEventSource:
    """In-process at-least-once event source backed by an asyncio.Queue.

    A failed delivery is re-queued after an exponential backoff
    (retry_delay, 2 * retry_delay, 4 * retry_delay, ...) so a short outage
    of a handler dependency does not burn every attempt at once. The
    consumer keeps serving other events while a redelivery waits.

    Args:
        max_deliveries: Attempts per handler before the event is dropped
            (and logged at ERROR).
        retry_delay: Base delay in seconds before the first redelivery.
    """

    def __init__(self, max_deliveries: int = 3, retry_delay: float = 1.0) -> None:
        self._queue: asyncio.Queue[tuple[TransactionEvent, int]] = asyncio.Queue()
        self._handlers: list[TransactionHandler] = []
        self._max_deliveries = max_deliveries
        self._retry_delay = retry_delay
        self._retries: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def subscribe(self, handler: TransactionHandler) -> None:
        self._handlers.append(handler)

    def publish(self, event: TransactionEvent) -> None:
        """Enqueue an event without waiting for any handler."""
        self._queue.put_nowait((event, 1))
        logger.debug(
            "transaction_event_published",
            transaction_id=event.transaction_id,
            user_id=event.user_id,
        )

    @property
    def pending(self) -> int:
        """Events queued or waiting for a redelivery."""
        return self._queue.qsize() + len(self._retries)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._consume())
        logger.info("event_source_started", handlers=len(self._handlers))

    async def stop(self) -> None:
        """Deliver everything already queued, then stop the consumer."""
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("event_source_stopped")

    async def drain(self) -> None:
        """Wait until every queued event, redeliveries included, has been handled."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*self._retries)

    async def _consume(self) -> None:
        while True:
            event, attempt = await self._queue.get()
            try:
                failed = await self._deliver(event)
                if failed and attempt < self._max_deliveries:
                    self._schedule_redelivery(event, attempt)
                elif failed:
                    logger.error(
                        "transaction_event_dropped",
                        transaction_id=event.transaction_id,
                        attempts=attempt,
                    )
            finally:
                self._queue.task_done()

    def _schedule_redelivery(self, event: TransactionEvent, attempt: int) -> None:
        delay = self._retry_delay * (2 ** (attempt - 1))
        logger.warning(
            "transaction_event_redelivery_scheduled",
            transaction_id=event.transaction_id,
            attempt=attempt,
            max_deliveries=self._max_deliveries,
            delay=delay,
        )
        task = asyncio.create_task(self._redeliver(event, attempt + 1, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _redeliver(self, event: TransactionEvent, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait((event, attempt))

    async def _deliver(self, event: TransactionEvent) -> bool:
        """Call every handler; return True if any of them raised."""
        failed = False
        for handler in self._handlers:
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                failed = True
                logger.warning(
                    "transaction_handler_failed",
                    transaction_id=event.transaction_id,
                    exc_info=True,
                )
        return failed
