"""
Typed results of inventory and order operations.

Running out of stock or replaying an idempotency key are normal business
outcomes, so they are returned as values instead of raised.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from orderflow.models.schemas import Order


@dataclass(frozen=True)
class StockReservation:
    """A successful conditional decrement."""
    product_id: str
    quantity: int
    new_stock: int
    version: int
    unit_price: Decimal


@dataclass(frozen=True)
class StockAdjustment:
    """A successful unconditional increment (compensation or restock)."""
    product_id: str
    quantity: int
    new_stock: int
    version: int


@dataclass(frozen=True)
class InsufficientStock:
    """
    The guard refused ``requested`` units. ``available`` is the stock read
    just after the refusal, capped below ``requested``; it is a hint, not a
    promise that a retry for that many will succeed.
    """

    product_id: str
    requested: int
    available: int


@dataclass(frozen=True)
class ProductNotFound:
    product_id: str


@dataclass(frozen=True)
class PlacedOrder:
    """
    The order stored for an idempotency key. ``replayed`` is True when the
    key had already been processed and nothing new was written.
    """
    order: Order
    replayed: bool = False


DecrementResult = Union[StockReservation, InsufficientStock, ProductNotFound]
IncrementResult = Union[StockAdjustment, ProductNotFound]
CreateOrderResult = Union[PlacedOrder, InsufficientStock]
