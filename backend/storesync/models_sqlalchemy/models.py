from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from storesync.models_sqlalchemy import Base
from storesync.models_sqlalchemy.types import JSONType
from storesync.utils import crypto


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, enum.Enum):
    SYNCED = "SYNCED"
    PENDING = "PENDING"
    ERROR = "ERROR"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    READY = "READY"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class Category(Base):
    """Product category, optionally nested under a parent category."""

    __tablename__ = "categories"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    parent_id = Column(String(36), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)

    platform_id = Column(String(64), nullable=True, unique=True, index=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    parent = relationship("Category", remote_side=[id])


class ShippingClass(Base):
    __tablename__ = "shipping_classes"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    platform_id = Column(String(64), nullable=True, unique=True, index=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)


class Customer(Base):
    """ERP customer. Customers coming from the store get a ``WEB-000001`` style code."""

    __tablename__ = "customers"

    id = Column(String(36), primary_key=True)
    code = Column(String(32), nullable=False, unique=True, index=True)
    customer_type = Column(String(8), nullable=False, default="B2C")
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    business_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(64), nullable=True)
    billing_address = Column(JSONType, nullable=True)
    shipping_address = Column(JSONType, nullable=True)

    platform_id = Column(String(64), nullable=True, unique=True, index=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True)
    sku = Column(String(128), nullable=False, unique=True, index=True)
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    short_description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    regular_price = Column(Numeric(12, 2), nullable=True)
    sale_price = Column(Numeric(12, 2), nullable=True)
    weight = Column(Numeric(10, 3), nullable=True)
    stock_quantity = Column(Integer, nullable=True)

    category_id = Column(String(36), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    shipping_class_id = Column(
        String(36), ForeignKey("shipping_classes.id", ondelete="SET NULL"), nullable=True, index=True
    )

    web_active = Column(Boolean, nullable=False, default=False)
    platform_id = Column(String(64), nullable=True, unique=True, index=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    category = relationship("Category")
    shipping_class = relationship("ShippingClass")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(64), nullable=False, unique=True, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    source = Column(String(32), nullable=False, default="PLATFORM")

    status = Column(String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)
    platform_status = Column(String(32), nullable=True)
    payment_status = Column(String(32), nullable=False, default="pending")
    payment_method = Column(String(128), nullable=True)

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    shipping = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="EUR")

    billing_address = Column(JSONType, nullable=True)
    shipping_address = Column(JSONType, nullable=True)
    customer_note = Column(Text, nullable=True)
    order_date = Column(DateTime(timezone=True), nullable=True)

    platform_id = Column(String(64), nullable=True, unique=True, index=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    customer = relationship("Customer")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True, index=True)

    product_name = Column(String(500), nullable=False)
    sku = Column(String(128), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    platform_line_item_id = Column(String(64), nullable=True)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class ConnectorSettings(Base):
    """Connection settings for the remote store.

    A single row is expected. Secrets are encrypted at rest; use the
    ``consumer_secret`` / ``webhook_secret`` properties rather than the
    underscored columns.
    """

    __tablename__ = "connector_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    base_url = Column(String(500), nullable=True)
    consumer_key = Column(String(255), nullable=True)
    _consumer_secret = Column("consumer_secret", Text, nullable=True)
    _webhook_secret = Column("webhook_secret", Text, nullable=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)

    @property
    def consumer_secret(self) -> str | None:
        raw = self._consumer_secret
        if raw is None:
            return None
        return crypto.decrypt(raw)

    @consumer_secret.setter
    def consumer_secret(self, value: str | None) -> None:
        if value is None or value == "":
            self._consumer_secret = None
        else:
            self._consumer_secret = crypto.encrypt(value)

    @property
    def webhook_secret(self) -> str | None:
        raw = self._webhook_secret
        if raw is None:
            return None
        return crypto.decrypt(raw)

    @webhook_secret.setter
    def webhook_secret(self, value: str | None) -> None:
        if value is None or value == "":
            self._webhook_secret = None
        else:
            self._webhook_secret = crypto.encrypt(value)
