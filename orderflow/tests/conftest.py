from decimal import Decimal

import pytest

from orderflow.core.database import build_engine, build_session_factory, drop_models, init_models
from orderflow.models.database import IdempotencyRecord, Product
from orderflow.services.cache import TwoTierCache
from orderflow.services.cache_backends import MemorySharedCache
from orderflow.services.events import InMemoryEventPublisher
from orderflow.services.inventory_ledger import InventoryLedger, ReconciliationLog, SqlStockStore
from orderflow.services.metrics import MetricStore
from orderflow.services.order_service import OrderProcessingService


class FakeClock:
    """Manually advanced clock for expiry and alert timing."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def test_engine(tmp_path):
    # File-backed so concurrent sessions use separate connections
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderflow_test.db'}")
    await init_models(engine)
    yield engine
    await drop_models(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
def add_products(session_factory):
    """Insert products given as {product_id: (price, stock)}."""

    async def _add(products):
        async with session_factory() as session:
            for product_id, (price, stock) in products.items():
                session.add(
                    Product(
                        product_id=product_id,
                        name=f"Product {product_id}",
                        price=Decimal(str(price)),
                        stock=stock,
                        version=1,
                    )
                )
            await session.commit()

    return _add


@pytest.fixture
def stock_of(session_factory):
    async def _stock(product_id):
        async with session_factory() as session:
            product = await session.get(Product, product_id)
            return None if product is None else product.stock

    return _stock


@pytest.fixture
def order_lookup(session_factory):
    """Order id committed for an idempotency key, or None."""

    async def _lookup(idempotency_key):
        async with session_factory() as session:
            record = await session.get(IdempotencyRecord, idempotency_key)
            if record is None or record.status != "completed":
                return None
            return record.order_id

    return _lookup


@pytest.fixture
def ledger(session_factory):
    return InventoryLedger(SqlStockStore(session_factory))


@pytest.fixture
def metrics():
    return MetricStore()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def shared_cache():
    return MemorySharedCache()


@pytest.fixture
def cache(shared_cache, metrics):
    return TwoTierCache(shared_cache, metrics=metrics)


@pytest.fixture
def reconciliation(metrics):
    return ReconciliationLog(metrics)


@pytest.fixture
def order_service(session_factory, ledger, publisher, cache, metrics, reconciliation):
    return OrderProcessingService(
        session_factory,
        ledger,
        publisher,
        cache=cache,
        metrics=metrics,
        reconciliation=reconciliation,
        retry_backoff=0,
    )
