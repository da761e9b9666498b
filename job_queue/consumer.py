"""
Event Consumer — workers that drain the inbound event bus into the orchestrator.

    POST /api/v1/events ─┐
    action effects ──────┼─▶ inbound ─▶ worker-N ─▶ Orchestrator.handle_event
    session.timeout ─────┘      ▲            │
                                │            │ handler raised
                             promote         ▼
                                └──── delayed (backoff) ──▶ dlq after max_retries

Several workers may share a consumer group across processes; the bus hands
each envelope to one of them. Delivery stays at-least-once, and a redelivered
event finds its execution already recorded under (automation, event id).
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from job_queue.event_bus import EventBus, get_event_bus
from models.schemas import InboundEvent

logger = structlog.get_logger()


class EventConsumer:
    """
    Consumes inbound events and invokes the orchestrator.

    Usage:
        consumer = EventConsumer(orchestrator, bus)
        await consumer.start_background()   # returns immediately
        await consumer.stop()
    """

    def __init__(
        self,
        orchestrator,  # core.orchestrator.Orchestrator (not imported: circular)
        bus: EventBus = None,
        consumer_group: str = "orchestrator-workers",
        consumer_name: str = "worker",
        concurrency: int = 5,
    ):
        self.orchestrator = orchestrator
        self.bus = bus or get_event_bus()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = max(1, concurrency)
        self._tasks: list[asyncio.Task] = []

    async def start_background(self) -> list[asyncio.Task]:
        """Start ``concurrency`` consume loops as background tasks."""
        logger.info("event_consumer_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)
        for i in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self.bus.consume(
                handler=self.handle,
                consumer_group=self.consumer_group,
                consumer_name=f"{self.consumer_name}-{i}",
            )))
        return list(self._tasks)

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("event_consumer_stopped")

    async def handle(self, event: InboundEvent):
        """
        Process one delivered event.

        An exception propagates to the bus, which nacks the envelope
        (retry with backoff, then DLQ). Per-action failures never get here;
        the executor folds them into execution outcomes.
        """
        logger.info("processing_event",
                    event_id=event.id,
                    event_type=event.type,
                    workspace_id=event.workspace_id,
                    cascade_depth=event.cascade_depth)
        try:
            result = await self.orchestrator.handle_event(event)
        except Exception as e:
            logger.error("event_processing_error",
                         event_id=event.id,
                         error=str(e),
                         exc_info=True)
            raise
        logger.info("event_processed",
                    event_id=event.id,
                    executions=len(result.get("executions", [])))


# ──────────────────────────────────────────────────────────────
#  Delayed Event Promoter
# ──────────────────────────────────────────────────────────────

class DelayedEventPromoter:
    """
    Moves due retries and delayed emits back onto the inbound queue every
    ``interval_seconds``. The in-memory bus promotes on dequeue as well, so
    this loop matters mostly for Redis.
    """

    def __init__(self, bus: EventBus = None, interval_seconds: int = 5):
        self.bus = bus or get_event_bus()
        self.interval_seconds = interval_seconds
        self._loop_task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._promote_forever())
        return self._loop_task

    async def stop(self):
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _promote_forever(self):
        logger.info("delayed_promoter_started", interval=self.interval_seconds)
        while True:
            try:
                moved = await self.bus.promote_delayed()
                if moved:
                    logger.debug("delayed_events_promoted", count=moved)
            except Exception as e:
                # The bus may be briefly unreachable; try again next tick.
                logger.error("promoter_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval_seconds)
