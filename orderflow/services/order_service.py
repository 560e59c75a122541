import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from orderflow.core.database import transaction
from orderflow.core.errors import (
    InvalidStatusTransition,
    NotFoundError,
    OrderTimeoutError,
    TransientError,
    ValidationError,
)
from orderflow.models import schemas
from orderflow.models.database import IdempotencyRecord, Order, OrderItem
from orderflow.models.outcomes import (
    CreateOrderResult,
    DecrementResult,
    InsufficientStock,
    PlacedOrder,
    ProductNotFound,
    StockReservation,
)
from orderflow.models.schemas import OrderItemCreate, OrderStatus
from orderflow.services.cache import TwoTierCache
from orderflow.services.catalog import CATALOG_TAG, product_tag
from orderflow.services.events import EventPublisher
from orderflow.services.inventory_ledger import InventoryLedger, ReconciliationLog
from orderflow.services.metrics import ORDER_CREATE_SECONDS, ORDERS_TOTAL, MetricStore
from orderflow.services.outbox import OutboxRelay, outbox_row

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

CLAIM_PENDING = "pending"
CLAIM_COMPLETED = "completed"

# Created is the only non-terminal status.
ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}
RESTOCKING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


class OrderProcessingService:
    """
    Turns a cart into exactly one durable order per idempotency key.

    A request first claims its idempotency key; concurrent requests for the
    same key wait for the claim holder and replay its order. Stock is then
    reserved as a saga: every line is an independent conditional decrement
    committed on its own, and each successful decrement is pushed onto a
    compensation list. The order, its items, its OrderCreated outbox row and
    the completed claim are written in a single transaction. Any failure
    before that commit replays the compensation list in reverse and releases
    the claim, so a failed order never keeps stock. Compensations that fail
    are escalated to the reconciliation log.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: InventoryLedger,
        publisher: EventPublisher,
        *,
        cache: Optional[TwoTierCache] = None,
        metrics: Optional[MetricStore] = None,
        reconciliation: Optional[ReconciliationLog] = None,
        retry_max: int = 3,
        retry_backoff: float = 0.05,
        default_timeout: float = 10.0,
        claim_grace: float = 30.0,
        claim_poll_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.outbox = OutboxRelay(session_factory, publisher)
        self.cache = cache
        self.metrics = metrics
        self.reconciliation = reconciliation if reconciliation is not None else ReconciliationLog(metrics)
        self.retry_max = retry_max
        self.retry_backoff = retry_backoff
        self.default_timeout = default_timeout
        self.claim_grace = claim_grace
        self.claim_poll_interval = claim_poll_interval
        self._clock = clock

    async def create_order(
        self,
        idempotency_key: str,
        items: Sequence[OrderItemCreate],
        timeout: Optional[float] = None,
    ) -> CreateOrderResult:
        """
        Create the order for ``idempotency_key`` or return the one already
        stored for it (``replayed=True``).

        Returns InsufficientStock naming the first product that could not be
        reserved. Raises ValidationError, NotFoundError for an unknown
        product, TransientError once retries are exhausted, and
        OrderTimeoutError when nothing committed before ``timeout``.
        """
        lines = self._validate(idempotency_key, items)
        timeout = self.default_timeout if timeout is None else timeout
        # A claim outlives its holder's deadline so a slow commit is never raced
        lease = timeout + self.claim_grace
        order_id = new_order_id()
        started = self._clock()
        outcome = "error"
        try:
            try:
                result = await asyncio.wait_for(
                    self._create_with_retries(idempotency_key, order_id, lines, lease), timeout
                )
            except asyncio.TimeoutError:
                # Whatever was in flight has settled; the index tells us if it committed.
                existing = await self._find_by_key(idempotency_key)
                if existing is None:
                    outcome = "timeout"
                    logger.warning(
                        f"Order for key {idempotency_key} timed out after {timeout:.2f}s; rolled back"
                    )
                    raise OrderTimeoutError(idempotency_key, timeout) from None
                result = PlacedOrder(existing, replayed=existing.order_id != order_id)

            if isinstance(result, InsufficientStock):
                outcome = "insufficient_stock"
                return result
            if result.replayed:
                outcome = "replayed"
            else:
                outcome = "created"
                await self._invalidate_products(item.product_id for item in result.order.items)
            # Replays relay too, so an event stranded by an earlier failure goes out
            await self._relay_events()
            return result
        except NotFoundError:
            outcome = "not_found"
            raise
        finally:
            self._observe(outcome, self._clock() - started)

    def _validate(self, idempotency_key: str, items: Sequence[OrderItemCreate]) -> List[OrderItemCreate]:
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("Idempotency key is required")
        if len(idempotency_key) > 255:
            raise ValidationError("Idempotency key must be at most 255 characters")
        lines = list(items or [])
        if not lines:
            raise ValidationError("Order must contain at least one item")
        for line in lines:
            if not line.product_id:
                raise ValidationError("Every item needs a product_id")
            if line.quantity <= 0:
                raise ValidationError(
                    f"Quantity for {line.product_id} must be positive, got {line.quantity}"
                )
        return lines

    async def _create_with_retries(
        self, idempotency_key: str, order_id: str, lines: List[OrderItemCreate], lease: float
    ) -> CreateOrderResult:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_max),
            wait=wait_random_exponential(multiplier=self.retry_backoff, max=max(self.retry_backoff * 20, 0.0)),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._attempt(idempotency_key, order_id, lines, lease)
        raise TransientError("Order attempts exhausted")  # unreachable with reraise=True

    async def _attempt(
        self, idempotency_key: str, order_id: str, lines: List[OrderItemCreate], lease: float
    ) -> CreateOrderResult:
        existing = await self._find_by_key(idempotency_key)
        if existing is not None:
            logger.info(f"Replaying order {existing.order_id} for key {idempotency_key}")
            return PlacedOrder(existing, replayed=existing.order_id != order_id)

        existing = await self._claim(idempotency_key, order_id, lease)
        if existing is not None:
            logger.info(
                f"Key {idempotency_key} completed by a concurrent request; returning {existing.order_id}"
            )
            return PlacedOrder(existing, replayed=True)

        applied: List[StockReservation] = []
        context = f"order {order_id} / key {idempotency_key}"
        committed = False
        try:
            for line in lines:
                result = await self._reserve(line, applied)
                if isinstance(result, StockReservation):
                    continue
                await self._compensate(applied, context)
                if isinstance(result, ProductNotFound):
                    raise NotFoundError("Product", result.product_id)
                return result

            persist = asyncio.ensure_future(self._persist(idempotency_key, order_id, applied))
            try:
                order = await asyncio.shield(persist)
            except asyncio.CancelledError:
                # The commit may already be on the wire; let it settle before deciding.
                if await self._settle(persist) is not None:
                    committed = True
                    applied.clear()
                raise
            committed = True
            applied.clear()
            logger.info(f"Order {order_id} created for key {idempotency_key}: total {order.total_amount}")
            return PlacedOrder(order)
        except IntegrityError:
            # The order row exists already: a stale claim was taken over and both finished.
            await self._compensate(applied, context)
            existing = await self._find_by_key(idempotency_key)
            if existing is None:
                raise
            logger.info(f"Concurrent duplicate for key {idempotency_key}; returning {existing.order_id}")
            return PlacedOrder(existing, replayed=True)
        except BaseException:
            await self._compensate(applied, context)
            raise
        finally:
            if not committed:
                await self._release_claim(idempotency_key, order_id)

    async def _reserve(self, line: OrderItemCreate, applied: List[StockReservation]) -> DecrementResult:
        """
        One conditional decrement, shielded from cancellation. A decrement
        that commits while the caller is being cancelled still lands on the
        compensation list.
        """
        task = asyncio.ensure_future(self.ledger.try_decrement(line.product_id, line.quantity))
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            settled = await self._settle(task)
            if isinstance(settled, StockReservation):
                applied.append(settled)
            raise
        if isinstance(result, StockReservation):
            applied.append(result)
        return result

    @staticmethod
    async def _settle(task: "asyncio.Future") -> Any:
        """Wait out a shielded step after cancellation; None if it failed."""
        try:
            return await task
        except Exception:
            return None

    async def _claim(self, idempotency_key: str, order_id: str, lease: float) -> Optional[schemas.Order]:
        """
        Take ownership of ``idempotency_key`` for ``order_id``. Returns None
        once the claim is ours, or the order another request completed for
        the same key. Waits while a live claim is held elsewhere and takes
        over claims whose lease has run out.
        """
        while True:
            try:
                async with transaction(self.session_factory) as session:
                    session.add(
                        IdempotencyRecord(
                            key=idempotency_key,
                            order_id=order_id,
                            status=CLAIM_PENDING,
                            lease_expires_at=time.time() + lease,
                            created_at=datetime.now(timezone.utc),
                        )
                    )
                return None
            except IntegrityError:
                pass

            claim = await self._read_claim(idempotency_key)
            if claim is None:
                continue
            status, holder, lease_expires_at = claim
            if status == CLAIM_COMPLETED:
                existing = await self._find_by_key(idempotency_key)
                if existing is not None:
                    return existing
            elif holder == order_id:
                # Left over from an earlier attempt of this same call
                return None
            elif lease_expires_at < time.time():
                logger.warning(
                    f"Claim on key {idempotency_key} by {holder} expired; taking it over for {order_id}"
                )
                await self._release_claim(idempotency_key, holder)
                continue
            await asyncio.sleep(self.claim_poll_interval)

    async def _read_claim(self, idempotency_key: str) -> Optional[Tuple[str, str, float]]:
        async with transaction(self.session_factory) as session:
            row = (
                await session.execute(
                    select(
                        IdempotencyRecord.status,
                        IdempotencyRecord.order_id,
                        IdempotencyRecord.lease_expires_at,
                    ).where(IdempotencyRecord.key == idempotency_key)
                )
            ).one_or_none()
        if row is None:
            return None
        return row.status, row.order_id, row.lease_expires_at

    async def _release_claim(self, idempotency_key: str, order_id: str) -> None:
        try:
            async with transaction(self.session_factory) as session:
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.key == idempotency_key,
                        IdempotencyRecord.order_id == order_id,
                        IdempotencyRecord.status == CLAIM_PENDING,
                    )
                )
        except Exception as exc:
            logger.warning(
                f"Could not release claim on key {idempotency_key}; it lapses when its lease ends: {exc}"
            )

    async def _persist(
        self, idempotency_key: str, order_id: str, reservations: List[StockReservation]
    ) -> schemas.Order:
        now = datetime.now(timezone.utc)
        order_items = []
        for position, reservation in enumerate(reservations):
            subtotal = (reservation.unit_price * reservation.quantity).quantize(CENT)
            order_items.append(
                OrderItem(
                    position=position,
                    product_id=reservation.product_id,
                    quantity=reservation.quantity,
                    unit_price=reservation.unit_price,
                    subtotal=subtotal,
                )
            )
        total = sum((item.subtotal for item in order_items), Decimal("0")).quantize(CENT)

        async with transaction(self.session_factory) as session:
            order = Order(
                order_id=order_id,
                idempotency_key=idempotency_key,
                status=OrderStatus.CREATED.value,
                total_amount=total,
                created_at=now,
                updated_at=now,
                items=order_items,
            )
            session.add(order)
            await session.flush()
            completed = await session.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.key == idempotency_key,
                    IdempotencyRecord.order_id == order_id,
                    IdempotencyRecord.status == CLAIM_PENDING,
                )
                .values(status=CLAIM_COMPLETED)
                .execution_options(synchronize_session=False)
            )
            if completed.rowcount != 1:
                raise TransientError(f"Claim on key {idempotency_key} lost before commit", retry_after=0.1)
            snapshot = schemas.Order.model_validate(order)
            event = schemas.OrderCreatedEvent(
                event_id=uuid.uuid4().hex,
                order_id=snapshot.order_id,
                items=snapshot.items,
                total_amount=snapshot.total_amount,
                timestamp=now,
            )
            session.add(outbox_row(event))
        return snapshot

    async def _compensate(self, applied: List[StockReservation], context: str) -> None:
        while applied:
            reservation = applied.pop()
            await self._give_back(reservation.product_id, reservation.quantity, context)

    async def _give_back(self, product_id: str, quantity: int, context: str) -> None:
        try:
            result = await self.ledger.increment(product_id, quantity)
        except Exception as exc:
            self.reconciliation.escalate(product_id, quantity, f"increment failed: {exc}", context)
            return
        if isinstance(result, ProductNotFound):
            self.reconciliation.escalate(product_id, quantity, "product record deleted", context)
            return
        logger.info(f"Returned {quantity} x {product_id} ({context}); stock now {result.new_stock}")

    async def _relay_events(self) -> None:
        # The row is durable; the periodic relay retries whatever this misses
        try:
            await self.outbox.relay_pending()
        except Exception as exc:
            logger.error(f"Outbox relay failed; events stay queued: {exc}")

    async def _invalidate_products(self, product_ids) -> None:
        if self.cache is None:
            return
        for product_id in sorted(set(product_ids)):
            await self.cache.invalidate_tag(product_tag(product_id))
        await self.cache.invalidate_tag(CATALOG_TAG)

    def _observe(self, outcome: str, elapsed: float) -> None:
        if self.metrics is None:
            return
        self.metrics.record(ORDER_CREATE_SECONDS, {"outcome": outcome}, elapsed)
        self.metrics.record(ORDERS_TOTAL, {"outcome": outcome}, 1)

    async def _find_by_key(self, idempotency_key: str) -> Optional[schemas.Order]:
        async with transaction(self.session_factory) as session:
            order = (
                await session.execute(select(Order).where(Order.idempotency_key == idempotency_key))
            ).scalar_one_or_none()
            return schemas.Order.model_validate(order) if order is not None else None

    async def get_order(self, order_id: str) -> schemas.Order:
        async with transaction(self.session_factory) as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            return schemas.Order.model_validate(order)

    async def transition_status(self, order_id: str, status: OrderStatus) -> schemas.Order:
        """
        Move an order forward. Terminal statuses never change; cancelling or
        failing a created order gives its stock back.
        """
        requested = OrderStatus(status)
        async with transaction(self.session_factory) as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            current = OrderStatus(order.status)
            if current == requested:
                return schemas.Order.model_validate(order)
            if requested not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStatusTransition(order_id, current.value, requested.value)
            changed = await session.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status == current.value)
                .values(status=requested.value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if changed.rowcount != 1:
                raise TransientError(f"Order {order_id} changed status concurrently", retry_after=0.1)
            lines: List[Tuple[str, int]] = [(item.product_id, item.quantity) for item in order.items]

        logger.info(f"Order {order_id}: {current.value} -> {requested.value}")
        if requested in RESTOCKING_STATUSES:
            context = f"order {order_id} {requested.value}"
            for product_id, quantity in reversed(lines):
                await self._give_back(product_id, quantity, context)
            await self._invalidate_products(product_id for product_id, _ in lines)
        return await self.get_order(order_id)
