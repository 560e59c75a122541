import asyncio
from decimal import Decimal

import pytest

from orderflow.core.errors import ValidationError
from orderflow.models.outcomes import (
    InsufficientStock,
    ProductNotFound,
    StockAdjustment,
    StockReservation,
)
from orderflow.services.inventory_ledger import (
    InventoryLedger,
    ReconciliationLog,
    StockSnapshot,
    UpdateOutcome,
)
from orderflow.services.metrics import STOCK_COMPENSATION_FAILURES_TOTAL, MetricStore


class TestInventoryLedger:
    """Conditional decrement and add-back against a real database"""

    @pytest.mark.asyncio
    async def test_decrement_reserves_stock(self, ledger, add_products, stock_of):
        await add_products({"DJ-MIXER-002": (299.99, 5)})

        result = await ledger.try_decrement("DJ-MIXER-002", 2)

        assert isinstance(result, StockReservation)
        assert result.quantity == 2
        assert result.new_stock == 3
        assert result.version == 2
        assert result.unit_price == Decimal("299.99")
        assert await stock_of("DJ-MIXER-002") == 3

    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_row_alone(self, ledger, add_products, stock_of):
        await add_products({"P1": (10, 1)})

        result = await ledger.try_decrement("P1", 2)

        assert result == InsufficientStock("P1", requested=2, available=1)
        snapshot = await ledger.read_stock("P1")
        assert snapshot.stock == 1
        assert snapshot.version == 1

    @pytest.mark.asyncio
    async def test_unknown_product(self, ledger):
        assert await ledger.try_decrement("NOPE", 1) == ProductNotFound("NOPE")
        assert await ledger.increment("NOPE", 1) == ProductNotFound("NOPE")
        assert await ledger.read_stock("NOPE") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -3])
    async def test_non_positive_quantity_rejected(self, ledger, add_products, quantity):
        await add_products({"P1": (10, 5)})

        with pytest.raises(ValidationError):
            await ledger.try_decrement("P1", quantity)
        with pytest.raises(ValidationError):
            await ledger.increment("P1", quantity)

    @pytest.mark.asyncio
    async def test_increment_returns_stock(self, ledger, add_products, stock_of):
        await add_products({"P1": (10, 0)})

        result = await ledger.increment("P1", 4)

        assert isinstance(result, StockAdjustment)
        assert result.new_stock == 4
        assert result.version == 2
        assert await stock_of("P1") == 4

    @pytest.mark.asyncio
    async def test_concurrent_decrements_never_oversell(self, ledger, add_products, stock_of):
        """
        Ten callers race for five units. Exactly five win, the rest see
        InsufficientStock, and stock ends at zero.
        """
        await add_products({"P1": (10, 5)})

        results = await asyncio.gather(*(ledger.try_decrement("P1", 1) for _ in range(10)))

        reserved = [r for r in results if isinstance(r, StockReservation)]
        refused = [r for r in results if isinstance(r, InsufficientStock)]
        assert len(reserved) == 5
        assert len(refused) == 5
        assert await stock_of("P1") == 0
        # Every successful update bumped the version exactly once
        assert sorted(r.version for r in reserved) == [2, 3, 4, 5, 6]


    @pytest.mark.asyncio
    async def test_available_stays_below_requested_when_restocked_mid_check(self):
        class RestockedStore:
            """The guard fails, then a restock lands before the follow-up read."""

            async def conditional_update(self, product_id, delta, require_at_least=None):
                return UpdateOutcome(affected_rows=0)

            async def read_stock(self, product_id):
                return StockSnapshot(product_id, stock=50, version=7, price=Decimal("10"))

        result = await InventoryLedger(RestockedStore()).try_decrement("P1", 3)

        assert result == InsufficientStock("P1", requested=3, available=2)
        assert result.available < result.requested


class TestReconciliationLog:
    def test_escalation_is_recorded(self):
        metrics = MetricStore()
        log = ReconciliationLog(metrics)

        failure = log.escalate("P1", 2, "increment failed: boom", "order ORD-1")

        assert len(log) == 1
        assert log.entries() == [failure]
        assert failure.quantity == 2
        assert metrics.query(STOCK_COMPENSATION_FAILURES_TOTAL, {"product_id": "P1"}).count == 1

    def test_bounded(self):
        log = ReconciliationLog(max_entries=2)
        for i in range(3):
            log.escalate(f"P{i}", 1, "gone", "ctx")

        assert [e.product_id for e in log.entries()] == ["P1", "P2"]
