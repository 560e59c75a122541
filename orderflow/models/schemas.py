from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ProductBase(BaseModel):
    product_id: str
    name: str
    description: Optional[str] = None
    price: Decimal

class ProductCreate(ProductBase):
    stock: int = Field(0, ge=0)

class Product(ProductBase):
    stock: int
    version: int

    class Config:
        from_attributes = True

class RestockRequest(BaseModel):
    quantity: int

class OrderItemCreate(BaseModel):
    product_id: str
    quantity: int

class OrderItem(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal

    class Config:
        from_attributes = True

class OrderCreate(BaseModel):
    idempotency_key: str
    items: List[OrderItemCreate]
    timeout_seconds: Optional[float] = Field(None, gt=0)

class Order(BaseModel):
    order_id: str
    idempotency_key: str
    status: OrderStatus
    total_amount: Decimal
    created_at: datetime
    items: List[OrderItem] = []

    class Config:
        from_attributes = True

class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderCreatedEvent(BaseModel):
    """Relayed from the outbox after commit, at least once; consumers dedupe by event_id."""
    event_id: str
    order_id: str
    items: List[OrderItem]
    total_amount: Decimal
    timestamp: datetime


class AlertNotification(BaseModel):
    """Sent on Pending->Firing and Firing->Resolved only."""
    event_id: str
    rule_id: str
    severity: str
    message: str
    state: str
    value: Optional[float] = None
    labels: Dict[str, str] = {}
    timestamp: datetime
