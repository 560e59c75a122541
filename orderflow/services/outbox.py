"""
Transactional outbox for domain events.

``_persist`` in the order service adds an OutboxEvent row in the same
transaction as the order, so a committed order always has its event stored.
The relay reads unpublished rows oldest first, hands them to the publisher
and stamps ``published_at``. A crash between publish and stamp republishes
the row on the next pass; that duplicate is the price of at-least-once.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from orderflow.core.database import transaction
from orderflow.models.database import OutboxEvent
from orderflow.models.schemas import OrderCreatedEvent
from orderflow.services.events import EventPublisher

logger = logging.getLogger(__name__)

ORDER_CREATED = "OrderCreated"


def outbox_row(event: OrderCreatedEvent) -> OutboxEvent:
    return OutboxEvent(
        event_id=event.event_id,
        event_type=ORDER_CREATED,
        order_id=event.order_id,
        payload=event.model_dump_json(),
        attempts=0,
        created_at=event.timestamp,
    )


class OutboxRelay:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        publisher: EventPublisher,
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.batch_size = batch_size
        # One pass at a time per process; rows read twice would go out twice
        self._lock = asyncio.Lock()

    async def pending(self) -> List[OutboxEvent]:
        async with transaction(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(OutboxEvent)
                    .where(OutboxEvent.published_at.is_(None))
                    .order_by(OutboxEvent.created_at, OutboxEvent.event_id)
                    .limit(self.batch_size)
                )
            ).scalars().all()
            return list(rows)

    async def relay_pending(self) -> int:
        """
        Publish one batch of unpublished events; returns how many went out.
        Stops at the first failure so events leave in commit order.
        """
        delivered = 0
        async with self._lock:
            for row in await self.pending():
                event = OrderCreatedEvent.model_validate_json(row.payload)
                try:
                    await self.publisher.publish(event)
                except Exception as exc:
                    logger.error(
                        f"{row.event_type} {row.event_id} for order {row.order_id} not delivered "
                        f"(attempt {row.attempts + 1}): {exc}"
                    )
                    await self._mark_failed(row.event_id, str(exc))
                    break
                await self._mark_published(row.event_id)
                delivered += 1
        if delivered:
            logger.info(f"Relayed {delivered} outbox events")
        return delivered

    async def _mark_published(self, event_id: str) -> None:
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.event_id == event_id, OutboxEvent.published_at.is_(None))
                .values(published_at=datetime.now(timezone.utc), attempts=OutboxEvent.attempts + 1)
                .execution_options(synchronize_session=False)
            )

    async def _mark_failed(self, event_id: str, error: str) -> None:
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.event_id == event_id)
                .values(attempts=OutboxEvent.attempts + 1, last_error=error[:500])
                .execution_options(synchronize_session=False)
            )

    async def backlog(self) -> int:
        async with transaction(self.session_factory) as session:
            rows = (
                await session.execute(
                    select(OutboxEvent.event_id).where(OutboxEvent.published_at.is_(None))
                )
            ).all()
            return len(rows)
