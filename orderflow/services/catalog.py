"""
Product read path served through the two-tier cache.

Product detail is cached under ``product:<id>`` and tagged with the same
name; the listing is tagged ``catalog``. Anything that changes stock
invalidates both.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from orderflow.core.database import transaction
from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.models import schemas
from orderflow.models.database import Product
from orderflow.models.outcomes import ProductNotFound
from orderflow.services.cache import TwoTierCache
from orderflow.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

CATALOG_TAG = "catalog"
CATALOG_KEY = "catalog:all"


def product_tag(product_id: str) -> str:
    return f"product:{product_id}"


class ProductCatalog:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: InventoryLedger,
        cache: Optional[TwoTierCache] = None,
        ttl: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.cache = cache
        self.ttl = ttl

    async def create_product(self, data: schemas.ProductCreate) -> Dict[str, Any]:
        try:
            async with transaction(self.session_factory) as session:
                product = Product(**data.model_dump(), version=1)
                session.add(product)
                await session.flush()
                created = schemas.Product.model_validate(product).model_dump(mode="json")
        except IntegrityError as exc:
            raise ValidationError(f"Product ID {data.product_id} already exists") from exc
        logger.info(f"Created product {data.product_id} with stock {data.stock}")
        await self._invalidate(data.product_id)
        return created

    async def _load_product(self, product_id: str) -> Dict[str, Any]:
        async with transaction(self.session_factory) as session:
            product = await session.get(Product, product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            return schemas.Product.model_validate(product).model_dump(mode="json")

    async def _load_all(self) -> List[Dict[str, Any]]:
        async with transaction(self.session_factory) as session:
            products = (
                await session.execute(select(Product).order_by(Product.product_id))
            ).scalars().all()
            return [schemas.Product.model_validate(p).model_dump(mode="json") for p in products]

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        if self.cache is None:
            return await self._load_product(product_id)
        return await self.cache.get_or_load(
            product_tag(product_id),
            lambda: self._load_product(product_id),
            ttl=self.ttl,
            tags=(product_tag(product_id),),
        )

    async def list_products(self) -> List[Dict[str, Any]]:
        if self.cache is None:
            return await self._load_all()
        return await self.cache.get_or_load(CATALOG_KEY, self._load_all, ttl=self.ttl, tags=(CATALOG_TAG,))

    async def restock(self, product_id: str, quantity: int) -> Dict[str, Any]:
        result = await self.ledger.increment(product_id, quantity)
        if isinstance(result, ProductNotFound):
            raise NotFoundError("Product", product_id)
        logger.info(f"Restocked {quantity} x {product_id}: stock now {result.new_stock}")
        await self._invalidate(product_id)
        return await self.get_product(product_id)

    async def _invalidate(self, product_id: str) -> None:
        if self.cache is None:
            return
        await self.cache.invalidate_tag(product_tag(product_id))
        await self.cache.invalidate_tag(CATALOG_TAG)
