"""
Event Bus — Abstract interface with Redis Streams and in-memory backends.

The orchestration core only consumes and produces events; delivery is
at-least-once, so every consumer must tolerate redelivery.

Stream Topology:
  events:inbound     — Business and synthetic events ready for handling
  events:delayed     — Events with a future delivery time (sorted set in Redis)
  events:dlq         — Dead-letter stream for events that kept failing

Envelope Schema:
  {
      "delivery_id":   unique id of this delivery (stable across redeliveries),
      "event":         JSON-encoded InboundEvent,
      "attempt":       redelivery counter,
      "max_attempts":  ceiling before DLQ,
      "deliver_at":    ISO timestamp when the event becomes visible,
      "metadata":      JSON-encoded extra data (failure reasons),
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from models.schemas import InboundEvent, utcnow

logger = structlog.get_logger()

EventHandler = Callable[[InboundEvent], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Envelope
# ──────────────────────────────────────────────────────────────

@dataclass
class EventEnvelope:
    """One delivery of an event on the bus."""
    event: InboundEvent
    attempt: int = 0
    max_attempts: int = 5
    deliver_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    delivery_id: str = ""

    def __post_init__(self):
        if not self.delivery_id:
            self.delivery_id = f"dlv_{uuid.uuid4().hex[:12]}"
        if not self.deliver_at:
            self.deliver_at = utcnow().isoformat()

    def to_dict(self) -> dict[str, str]:
        return {
            "delivery_id": self.delivery_id,
            "event": self.event.model_dump_json(),
            "attempt": str(self.attempt),
            "max_attempts": str(self.max_attempts),
            "deliver_at": self.deliver_at,
            "metadata": json.dumps(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventEnvelope:
        event = data["event"]
        metadata = data.get("metadata") or {}
        return cls(
            event=InboundEvent.model_validate_json(event) if isinstance(event, str)
            else InboundEvent.model_validate(event),
            attempt=int(data.get("attempt", 0)),
            max_attempts=int(data.get("max_attempts", 5)),
            deliver_at=data.get("deliver_at", ""),
            metadata=json.loads(metadata) if isinstance(metadata, str) else dict(metadata),
            delivery_id=data.get("delivery_id", ""),
        )

    @property
    def deliver_timestamp(self) -> float:
        return datetime.fromisoformat(self.deliver_at).timestamp()

    def next_retry(self, backoff_seconds: int = 5) -> EventEnvelope:
        """Create a copy with incremented attempt and exponential backoff delay."""
        retry_at = utcnow() + timedelta(seconds=backoff_seconds * (2 ** self.attempt))
        return EventEnvelope(
            event=self.event,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            deliver_at=retry_at.isoformat(),
            metadata={**self.metadata, "last_failure_at": utcnow().isoformat()},
            delivery_id=self.delivery_id,  # same id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Stream Names
# ──────────────────────────────────────────────────────────────

class Streams:
    INBOUND = "events:inbound"
    DELAYED = "events:delayed"
    DLQ = "events:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class EventBus(ABC):
    """Abstract event bus interface."""

    def __init__(self, max_attempts: int = 5, retry_backoff_base: int = 5):
        self.max_attempts = max_attempts
        self.retry_backoff_base = retry_backoff_base

    @abstractmethod
    async def connect(self):
        """Establish connection to the bus backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def _publish_envelope(self, stream: str, envelope: EventEnvelope):
        ...

    @abstractmethod
    async def _publish_delayed_envelope(self, envelope: EventEnvelope):
        ...

    async def publish(self, event: InboundEvent):
        """Publish an event for immediate delivery."""
        envelope = EventEnvelope(event=event, max_attempts=self.max_attempts)
        await self._publish_envelope(Streams.INBOUND, envelope)

    async def publish_delayed(self, event: InboundEvent, deliver_at: datetime):
        """Publish an event that becomes visible at deliver_at."""
        envelope = EventEnvelope(
            event=event,
            max_attempts=self.max_attempts,
            deliver_at=deliver_at.isoformat(),
        )
        await self._publish_delayed_envelope(envelope)

    @abstractmethod
    async def consume(
        self,
        handler: EventHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Start consuming inbound events. Blocks and calls handler for each one.
        A handler exception routes the envelope to retry or DLQ.
        """
        ...

    async def nack(self, envelope: EventEnvelope, reason: str = ""):
        """Negative-acknowledge — route to retry or DLQ."""
        if envelope.attempt + 1 >= envelope.max_attempts:
            envelope.metadata["dlq_reason"] = reason or f"Exceeded {envelope.max_attempts} attempts"
            await self._publish_envelope(Streams.DLQ, envelope)
            logger.warning("event_moved_to_dlq",
                           event_id=envelope.event.id,
                           delivery_id=envelope.delivery_id,
                           attempts=envelope.attempt + 1)
        else:
            retry = envelope.next_retry(self.retry_backoff_base)
            await self._publish_delayed_envelope(retry)
            logger.info("event_scheduled_for_retry",
                        event_id=envelope.event.id,
                        attempt=retry.attempt,
                        deliver_at=retry.deliver_at)

    @abstractmethod
    async def queue_length(self, stream: str = Streams.INBOUND) -> int:
        """Return the number of pending envelopes in a stream."""
        ...

    @abstractmethod
    async def peek(self, stream: str = Streams.INBOUND, count: int = 10) -> list[EventEnvelope]:
        """Peek at envelopes without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self) -> int:
        """Move delayed envelopes whose deliver_at has arrived to the inbound stream."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisEventBus(EventBus):
    """
    Production bus backed by Redis Streams + Sorted Sets.

    - Inbound stream uses consumer groups for horizontal scaling
    - Delayed events live in a Sorted Set (ZRANGEBYSCORE for promotion)
    - DLQ is a Redis Stream for inspection
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._redis = None
        self._running = False

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_bus_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.close()

    async def _ensure_group(self, stream: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(stream, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _publish_envelope(self, stream: str, envelope: EventEnvelope):
        await self._redis.xadd(stream, envelope.to_dict())
        logger.info("event_published",
                    stream=stream,
                    event_id=envelope.event.id,
                    event_type=envelope.event.type)

    async def _publish_delayed_envelope(self, envelope: EventEnvelope):
        payload = json.dumps(envelope.to_dict())
        await self._redis.zadd(Streams.DELAYED, {payload: envelope.deliver_timestamp})
        logger.info("delayed_event_published",
                    event_id=envelope.event.id,
                    deliver_at=envelope.deliver_at)

    async def consume(
        self,
        handler: EventHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(Streams.INBOUND, consumer_group)
        self._running = True
        logger.info("consumer_started",
                    stream=Streams.INBOUND,
                    group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={Streams.INBOUND: ">"},
                    count=batch_size,
                    block=2000,  # block 2s waiting for messages
                )

                if not messages:
                    continue

                for _stream, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        envelope = EventEnvelope.from_dict(fields)
                        try:
                            await handler(envelope.event)
                        except Exception as e:
                            logger.error("event_handler_error",
                                         event_id=envelope.event.id,
                                         error=str(e))
                            await self.nack(envelope, reason=str(e))
                        await self._redis.xack(Streams.INBOUND, consumer_group, message_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", stream=Streams.INBOUND, error=str(e))
                await asyncio.sleep(1)

    async def queue_length(self, stream: str = Streams.INBOUND) -> int:
        if stream == Streams.DELAYED:
            return await self._redis.zcard(stream)
        return await self._redis.xlen(stream)

    async def peek(self, stream: str = Streams.INBOUND, count: int = 10) -> list[EventEnvelope]:
        messages = await self._redis.xrange(stream, count=count)
        return [EventEnvelope.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self) -> int:
        """Move envelopes whose deliver_at <= now from sorted set to the inbound stream."""
        now = utcnow().timestamp()
        ready = await self._redis.zrangebyscore(Streams.DELAYED, "-inf", now)

        if not ready:
            return 0

        pipe = self._redis.pipeline()
        for payload in ready:
            envelope = EventEnvelope.from_dict(json.loads(payload))
            pipe.xadd(Streams.INBOUND, envelope.to_dict())
            pipe.zrem(Streams.DELAYED, payload)
        await pipe.execute()

        logger.info("delayed_events_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryEventBus(EventBus):
    """
    Development/test bus backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, promote_interval: float = 5.0, **kwargs):
        super().__init__(**kwargs)
        self._streams: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, EventEnvelope]] = []  # (timestamp, envelope)
        self._dlq: list[EventEnvelope] = []
        self._published: list[InboundEvent] = []
        self._running = False
        self._promote_interval = promote_interval
        self._promoter_task: Optional[asyncio.Task] = None

    @property
    def published(self) -> list[InboundEvent]:
        """Every event ever published, in order (inspection aid)."""
        return list(self._published)

    @property
    def dead_letters(self) -> list[EventEnvelope]:
        return list(self._dlq)

    def _get_stream(self, name: str) -> asyncio.Queue:
        if name not in self._streams:
            self._streams[name] = asyncio.Queue()
        return self._streams[name]

    async def connect(self):
        self._running = True
        self._promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_bus_connected")

    async def close(self):
        self._running = False
        if self._promoter_task:
            self._promoter_task.cancel()
            try:
                await self._promoter_task
            except asyncio.CancelledError:
                pass

    async def _publish_envelope(self, stream: str, envelope: EventEnvelope):
        if stream == Streams.DLQ:
            self._dlq.append(envelope)
            return
        if envelope.attempt == 0:
            self._published.append(envelope.event)
        await self._get_stream(stream).put(envelope)
        logger.info("event_published",
                    stream=stream,
                    event_id=envelope.event.id,
                    event_type=envelope.event.type)

    async def _publish_delayed_envelope(self, envelope: EventEnvelope):
        if envelope.attempt == 0:
            self._published.append(envelope.event)
        self._delayed.append((envelope.deliver_timestamp, envelope))
        self._delayed.sort(key=lambda x: x[0])
        logger.info("delayed_event_published",
                    event_id=envelope.event.id,
                    deliver_at=envelope.deliver_at)

    async def consume(
        self,
        handler: EventHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        q = self._get_stream(Streams.INBOUND)
        self._running = True
        logger.info("consumer_started", stream=Streams.INBOUND)

        while self._running:
            try:
                envelope = await asyncio.wait_for(q.get(), timeout=2.0)
                try:
                    await handler(envelope.event)
                except Exception as e:
                    logger.error("event_handler_error",
                                 event_id=envelope.event.id,
                                 error=str(e))
                    await self.nack(envelope, reason=str(e))
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    async def queue_length(self, stream: str = Streams.INBOUND) -> int:
        if stream == Streams.DLQ:
            return len(self._dlq)
        if stream == Streams.DELAYED:
            return len(self._delayed)
        return self._get_stream(stream).qsize()

    async def peek(self, stream: str = Streams.INBOUND, count: int = 10) -> list[EventEnvelope]:
        if stream == Streams.DLQ:
            return self._dlq[:count]
        q = self._get_stream(stream)
        items = []
        # asyncio.Queue has no peek; drain and re-add
        while not q.empty():
            items.append(q.get_nowait())
        for item in items:
            q.put_nowait(item)
        return items[:count]

    async def promote_delayed(self) -> int:
        now = utcnow().timestamp()
        ready = [(ts, env) for ts, env in self._delayed if ts <= now]
        self._delayed = [(ts, env) for ts, env in self._delayed if ts > now]

        for _, envelope in ready:
            await self._get_stream(Streams.INBOUND).put(envelope)

        if ready:
            logger.info("delayed_events_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed events."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[EventBus] = None


def create_event_bus(queue_config: dict[str, Any] = None) -> EventBus:
    """Factory: create the appropriate bus backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    kwargs = {
        "max_attempts": config.get("max_delivery_attempts", 5),
    }

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisEventBus(redis_url=url, **kwargs)
    else:
        _instance = InMemoryEventBus(
            promote_interval=config.get("delayed_promote_interval", 5),
            **kwargs,
        )

    return _instance


def get_event_bus() -> EventBus:
    """Return the singleton bus instance."""
    global _instance
    if _instance is None:
        _instance = create_event_bus()
    return _instance


def reset_event_bus():
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
