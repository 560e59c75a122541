"""
Domain event publishing.

OrderCreated is written to the outbox together with the order and relayed
from there, so delivery is at-least-once: the relay retries until the bus
accepts the event, and consumers must deduplicate by event_id or order_id.
"""
import logging
from typing import List, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from orderflow.models.schemas import OrderCreatedEvent

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event: OrderCreatedEvent) -> None: ...


class InMemoryEventPublisher:
    """Keeps published events in memory; used without a message bus and in tests."""

    def __init__(self) -> None:
        self.events: List[OrderCreatedEvent] = []

    async def publish(self, event: OrderCreatedEvent) -> None:
        self.events.append(event)
        logger.info(f"OrderCreated {event.order_id} recorded in-process")


class RedisEventPublisher:
    """
    Appends events to a Redis Stream. Unlike pub/sub, entries stay in the
    stream until trimmed, so consumer groups that were offline catch up.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        stream: str = "order_events",
        max_length: int = 100_000,
        attempts: int = 3,
    ):
        self.client = client
        self.stream = stream
        self.max_length = max_length
        self.attempts = attempts

    async def publish(self, event: OrderCreatedEvent) -> None:
        fields = {
            "event_id": event.event_id,
            "event_type": "OrderCreated",
            "order_id": event.order_id,
            "payload": event.model_dump_json(),
        }
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_random_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type((RedisError, OSError)),
            reraise=True,
        ):
            with attempt:
                entry_id = await self.client.xadd(
                    self.stream, fields, maxlen=self.max_length, approximate=True
                )
        logger.info(f"Appended OrderCreated {event.order_id} to {self.stream} as {entry_id}")
