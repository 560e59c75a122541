from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(Base):
    """Product stock record. Stock is only changed through the inventory ledger."""
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    product_id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(String)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)  # bumped on every stock change
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    order_items = relationship("OrderItem", back_populates="product")


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(String(32), primary_key=True)
    idempotency_key = Column(String(255), unique=True, index=True, nullable=False)
    status = Column(String(16), nullable=False, default="created")
    total_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.order_id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String(64), ForeignKey("products.product_id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", back_populates="order_items")


class IdempotencyRecord(Base):
    """
    Durable idempotency index. A request claims its key before touching
    stock; the claim is ``pending`` until the order commits and flips it to
    ``completed`` in the same transaction. The primary key decides which of
    several concurrent requests for one key does the work.
    """
    __tablename__ = "idempotency_keys"

    key = Column(String(255), primary_key=True)
    # Reserved id of the order being built; no FK while the claim is pending
    order_id = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    lease_expires_at = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class OutboxEvent(Base):
    """Domain event written with the order and relayed to the bus afterwards."""
    __tablename__ = "event_outbox"

    event_id = Column(String(32), primary_key=True)
    event_type = Column(String(64), nullable=False)
    order_id = Column(String(32), ForeignKey("orders.order_id"), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(500))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
