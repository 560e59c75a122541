"""
Inventory ledger: the only writer of product stock.

Oversell protection comes from one guarded UPDATE per decrement

    UPDATE products SET stock = stock - :qty, version = version + 1
    WHERE product_id = :id AND stock >= :qty

executed atomically by the database. No application lock is taken, so the
guarantee holds across any number of server processes.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Deque, List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from orderflow.core.database import transaction
from orderflow.core.errors import ValidationError
from orderflow.models.database import Product
from orderflow.models.outcomes import (
    DecrementResult,
    IncrementResult,
    InsufficientStock,
    ProductNotFound,
    StockAdjustment,
    StockReservation,
)
from orderflow.services.metrics import STOCK_COMPENSATION_FAILURES_TOTAL, MetricStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockSnapshot:
    product_id: str
    stock: int
    version: int
    price: Decimal


@dataclass(frozen=True)
class UpdateOutcome:
    """Affected-row count of a conditional update plus the row as it was left."""
    affected_rows: int
    snapshot: Optional[StockSnapshot] = None


class StockStore(Protocol):
    async def conditional_update(
        self, product_id: str, delta: int, require_at_least: Optional[int] = None
    ) -> UpdateOutcome: ...

    async def read_stock(self, product_id: str) -> Optional[StockSnapshot]: ...


class SqlStockStore:
    """StockStore on any SQLAlchemy async engine with row-level atomic updates."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def conditional_update(
        self, product_id: str, delta: int, require_at_least: Optional[int] = None
    ) -> UpdateOutcome:
        """
        Add ``delta`` to stock and bump the version, only where
        ``stock >= require_at_least`` when a guard is given. The resulting
        row is read back inside the same transaction.
        """
        stmt = (
            update(Product)
            .where(Product.product_id == product_id)
            .values(
                stock=Product.stock + delta,
                version=Product.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if require_at_least is not None:
            stmt = stmt.where(Product.stock >= require_at_least)

        async with transaction(self.session_factory) as session:
            affected = (await session.execute(stmt)).rowcount
            if affected != 1:
                return UpdateOutcome(affected_rows=affected)
            row = (
                await session.execute(
                    select(Product.stock, Product.version, Product.price).where(
                        Product.product_id == product_id
                    )
                )
            ).one()
            return UpdateOutcome(
                affected_rows=1,
                snapshot=StockSnapshot(product_id, row.stock, row.version, row.price),
            )

    async def read_stock(self, product_id: str) -> Optional[StockSnapshot]:
        async with transaction(self.session_factory) as session:
            row = (
                await session.execute(
                    select(Product.stock, Product.version, Product.price).where(
                        Product.product_id == product_id
                    )
                )
            ).one_or_none()
        if row is None:
            return None
        return StockSnapshot(product_id, row.stock, row.version, row.price)


class InventoryLedger:
    def __init__(self, store: StockStore):
        self.store = store

    async def try_decrement(self, product_id: str, quantity: int) -> DecrementResult:
        """
        Take ``quantity`` units if they are there. Never retries on its own;
        a failed guard is reported as InsufficientStock or ProductNotFound.
        """
        if quantity <= 0:
            raise ValidationError(f"Quantity for {product_id} must be positive, got {quantity}")

        outcome = await self.store.conditional_update(
            product_id, -quantity, require_at_least=quantity
        )
        if outcome.affected_rows == 1 and outcome.snapshot is not None:
            snap = outcome.snapshot
            logger.info(
                f"Reserved {quantity} x {product_id}: stock now {snap.stock} (version {snap.version})"
            )
            return StockReservation(product_id, quantity, snap.stock, snap.version, snap.price)

        current = await self.store.read_stock(product_id)
        if current is None:
            return ProductNotFound(product_id)
        # Restocks can land between the failed guard and this read
        available = max(min(current.stock, quantity - 1), 0)
        logger.info(
            f"Insufficient stock for {product_id}: requested {quantity}, available {available}"
        )
        return InsufficientStock(product_id, requested=quantity, available=available)

    async def increment(self, product_id: str, quantity: int) -> IncrementResult:
        """Unconditional add-back, used for compensation and restocking."""
        if quantity <= 0:
            raise ValidationError(f"Quantity for {product_id} must be positive, got {quantity}")

        outcome = await self.store.conditional_update(product_id, quantity)
        if outcome.affected_rows != 1 or outcome.snapshot is None:
            logger.error(f"Cannot return {quantity} x {product_id}: product record is gone")
            return ProductNotFound(product_id)
        snap = outcome.snapshot
        return StockAdjustment(product_id, quantity, snap.stock, snap.version)

    async def read_stock(self, product_id: str) -> Optional[StockSnapshot]:
        return await self.store.read_stock(product_id)


@dataclass(frozen=True)
class CompensationFailure:
    product_id: str
    quantity: int
    reason: str
    context: str
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReconciliationLog:
    """
    Stock that could not be given back. Entries here need an operator;
    they are never retried or dropped automatically.
    """

    def __init__(self, metrics: Optional[MetricStore] = None, max_entries: int = 1000):
        self.metrics = metrics
        self._entries: Deque[CompensationFailure] = deque(maxlen=max_entries)

    def escalate(self, product_id: str, quantity: int, reason: str, context: str) -> CompensationFailure:
        failure = CompensationFailure(product_id, quantity, reason, context)
        self._entries.append(failure)
        logger.error(
            f"MANUAL RECONCILIATION REQUIRED: {quantity} x {product_id} not returned "
            f"({reason}; {context})"
        )
        if self.metrics is not None:
            self.metrics.record(STOCK_COMPENSATION_FAILURES_TOTAL, {"product_id": product_id})
        return failure

    def entries(self) -> List[CompensationFailure]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
