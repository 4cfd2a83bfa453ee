"""Bounded queue + worker pool feeding change events to the aggregation service.

``submit`` blocks while the queue is full, which gives producers
backpressure instead of unbounded in-flight work. Worker failures are
logged and kept in a bounded dead-letter list; a failed event never stops
its worker.
"""

import asyncio
import contextlib
import logging
from collections import deque
from typing import Optional, Union

from pydantic import BaseModel, Field

from .aggregation_service import AggregationService
from .models import DependencyChangeEvent, EntityChangeEvent, EventType, utc_now

logger = logging.getLogger(__name__)

ChangeEvent = Union[EntityChangeEvent, DependencyChangeEvent]


class DeadLetter(BaseModel):
    event: ChangeEvent
    error: str
    error_type: str
    failed_at: str = Field(default_factory=lambda: utc_now().isoformat())


class EventDispatcher:
    """Dispatches entity and dependency change events to worker tasks.

    Example:
        >>> dispatcher = EventDispatcher(aggregation, max_queue_size=1000, workers=10)
        >>> dispatcher.start()
        >>> await dispatcher.submit(event)
        >>> await dispatcher.join()
        >>> await dispatcher.stop()
    """

    def __init__(
        self,
        aggregation: AggregationService,
        max_queue_size: int = 1000,
        workers: int = 10,
        dead_letter_limit: int = 1000,
    ) -> None:
        self.aggregation = aggregation
        self.max_queue_size = max_queue_size
        self.workers = workers
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        self.dead_letters: deque[DeadLetter] = deque(maxlen=dead_letter_limit)
        self.processed = 0
        self.failed = 0

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_queue_size)
        return self._queue

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def queue_depth(self) -> int:
        return self.queue.qsize()

    def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info(
            "event_dispatcher_started",
            extra={"workers": self.workers, "max_queue_size": self.max_queue_size},
        )

    async def stop(self) -> None:
        """Cancel workers. Events still queued are left unprocessed."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info(
            "event_dispatcher_stopped",
            extra={"pending": self.queue_depth, "processed": self.processed, "failed": self.failed},
        )

    async def submit(self, event: ChangeEvent) -> None:
        """Enqueue an event, waiting while the queue is full."""
        if self.queue.full():
            logger.warning("event_queue_full", extra={"max_queue_size": self.max_queue_size})
        await self.queue.put(event)

    async def join(self) -> None:
        """Wait until every submitted event has been handled."""
        await self.queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.handle_event(event)
                self.processed += 1
            except Exception as e:
                self.failed += 1
                self.dead_letters.append(DeadLetter(
                    event=event, error=str(e), error_type=type(e).__name__
                ))
                logger.error(
                    "event_processing_failed",
                    extra={
                        "worker": worker_id,
                        "event_type": event.event_type.value,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
            finally:
                self.queue.task_done()

    async def handle_event(self, event: ChangeEvent) -> None:
        """Route one event to the aggregation service."""
        if isinstance(event, DependencyChangeEvent):
            await self.handle_dependency_change(event)
        elif event.event_type == EventType.DELETE:
            await self.aggregation.remove_entity_embedding(event)
        else:
            await self.aggregation.process_entity_for_embedding(event)

    async def handle_dependency_change(self, event: DependencyChangeEvent) -> None:
        """Re-embed both endpoints of an added or removed edge."""
        logger.info(
            "dependency_change_received",
            extra={
                "event_type": event.event_type.value,
                "dependency_type": event.dependency_type.value,
                "dependent_entity_id": event.dependent_entity_id,
                "depends_on_entity_id": event.depends_on_entity_id,
            },
        )
        table = event.source_table
        await asyncio.gather(*(
            self.aggregation.process_entity_for_embedding(EntityChangeEvent(
                event_type=EventType.UPDATE,
                source_table=table,
                source_id=entity_id,
                workspace_id=event.workspace_id,
                timestamp=event.timestamp,
            ))
            for entity_id in (event.dependent_entity_id, event.depends_on_entity_id)
        ))

    async def process_batch_events(self, events: list[ChangeEvent]) -> int:
        """Handle a batch concurrently without the queue.

        Returns:
            Number of events that failed
        """
        results = await asyncio.gather(
            *(self.handle_event(event) for event in events),
            return_exceptions=True,
        )
        failures = 0
        for event, result in zip(events, results):
            if isinstance(result, Exception):
                failures += 1
                self.dead_letters.append(DeadLetter(
                    event=event, error=str(result), error_type=type(result).__name__
                ))
        logger.info(
            "batch_events_processed",
            extra={"total": len(events), "failed": failures},
        )
        return failures

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "workers": self.workers,
            "queue_depth": self.queue_depth,
            "max_queue_size": self.max_queue_size,
            "processed": self.processed,
            "failed": self.failed,
            "dead_letters": len(self.dead_letters),
        }
