"""Lookup and upsert helpers for entities mirrored from the remote store.

Every upsert follows the same matching order: remote id, then natural key
(slug / SKU / email / order number), then create. When a natural-key match
is found the remote id is backfilled onto it so later lookups hit directly.
Helpers only flush; the caller owns the commit.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type
from uuid import uuid4

from sqlalchemy.orm import Session

from storesync.models_sqlalchemy.models import (
    Category,
    Customer,
    Order,
    Product,
    ShippingClass,
    SyncStatus,
)


CUSTOMER_CODE_PREFIX = "WEB-"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def find_by_platform_id(db: Session, model: Type, platform_id: Optional[str]):
    if not platform_id:
        return None
    return db.query(model).filter(model.platform_id == str(platform_id)).first()


def find_category(db: Session, *, platform_id: Optional[str] = None, slug: Optional[str] = None) -> Optional[Category]:
    found = find_by_platform_id(db, Category, platform_id)
    if found is None and slug:
        found = db.query(Category).filter(Category.slug == slug).first()
    return found


def find_shipping_class(
    db: Session, *, platform_id: Optional[str] = None, slug: Optional[str] = None
) -> Optional[ShippingClass]:
    found = find_by_platform_id(db, ShippingClass, platform_id)
    if found is None and slug:
        found = db.query(ShippingClass).filter(ShippingClass.slug == slug).first()
    return found


def find_customer(db: Session, *, platform_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Customer]:
    found = find_by_platform_id(db, Customer, platform_id)
    if found is None and email:
        found = db.query(Customer).filter(Customer.email == email.strip().lower()).first()
    return found


def find_product(db: Session, *, platform_id: Optional[str] = None, sku: Optional[str] = None) -> Optional[Product]:
    found = find_by_platform_id(db, Product, platform_id)
    if found is None and sku:
        found = db.query(Product).filter(Product.sku == sku.strip()).first()
    return found


def find_order(
    db: Session, *, platform_id: Optional[str] = None, order_number: Optional[str] = None
) -> Optional[Order]:
    found = find_by_platform_id(db, Order, platform_id)
    if found is None and order_number:
        found = db.query(Order).filter(Order.order_number == order_number).first()
    return found


def unique_slug(db: Session, model: Type, base: str, *, exclude_id: Optional[str] = None) -> str:
    candidate = base
    suffix = 2
    while True:
        query = db.query(model.id).filter(model.slug == candidate)
        if exclude_id:
            query = query.filter(model.id != exclude_id)
        if query.first() is None:
            return candidate
        candidate = f"{base}-{suffix}"
        suffix += 1


def next_customer_code(db: Session) -> str:
    """Next ``WEB-000001`` style code after the highest one in use."""
    highest = 0
    rows = db.query(Customer.code).filter(Customer.code.like(f"{CUSTOMER_CODE_PREFIX}%")).all()
    for (code,) in rows:
        match = re.match(rf"^{CUSTOMER_CODE_PREFIX}(\d+)$", code or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{CUSTOMER_CODE_PREFIX}{highest + 1:06d}"


def _mark_synced(entity, platform_id: Optional[str], status: SyncStatus) -> None:
    if platform_id:
        entity.platform_id = str(platform_id)
    entity.sync_status = status.value
    entity.last_sync_at = _now_utc()


def _apply(entity, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(entity, key, value)


def upsert_category(
    db: Session,
    fields: Dict[str, Any],
    *,
    platform_id: Optional[str],
    parent_id: Optional[str] = None,
    status: SyncStatus = SyncStatus.SYNCED,
) -> Tuple[Category, bool]:
    category = find_category(db, platform_id=platform_id, slug=fields.get("slug"))
    created = category is None
    if created:
        category = Category(id=str(uuid4()))
        db.add(category)
    fields = dict(fields)
    fields["slug"] = unique_slug(db, Category, fields["slug"], exclude_id=None if created else category.id)
    _apply(category, fields)
    category.parent_id = parent_id
    _mark_synced(category, platform_id, status)
    db.flush()
    return category, created


def upsert_shipping_class(
    db: Session,
    fields: Dict[str, Any],
    *,
    platform_id: Optional[str],
    status: SyncStatus = SyncStatus.SYNCED,
) -> Tuple[ShippingClass, bool]:
    shipping_class = find_shipping_class(db, platform_id=platform_id, slug=fields.get("slug"))
    created = shipping_class is None
    if created:
        shipping_class = ShippingClass(id=str(uuid4()))
        db.add(shipping_class)
    fields = dict(fields)
    fields["slug"] = unique_slug(
        db, ShippingClass, fields["slug"], exclude_id=None if created else shipping_class.id
    )
    _apply(shipping_class, fields)
    _mark_synced(shipping_class, platform_id, status)
    db.flush()
    return shipping_class, created


def upsert_customer(
    db: Session,
    fields: Dict[str, Any],
    *,
    platform_id: Optional[str],
    status: SyncStatus = SyncStatus.SYNCED,
) -> Tuple[Customer, bool]:
    customer = find_customer(db, platform_id=platform_id, email=fields.get("email"))
    created = customer is None
    if created:
        customer = Customer(id=str(uuid4()), code=next_customer_code(db), customer_type="B2C")
        db.add(customer)
    _apply(customer, fields)
    _mark_synced(customer, platform_id, status)
    db.flush()
    return customer, created


def upsert_product(
    db: Session,
    fields: Dict[str, Any],
    *,
    platform_id: Optional[str],
    category_id: Optional[str] = None,
    shipping_class_id: Optional[str] = None,
    status: SyncStatus = SyncStatus.SYNCED,
) -> Tuple[Product, bool]:
    fields = dict(fields)
    if not fields.get("sku"):
        fields["sku"] = f"PLATFORM-{platform_id}"
    product = find_product(db, platform_id=platform_id, sku=fields["sku"])
    created = product is None
    if created:
        product = Product(id=str(uuid4()))
        db.add(product)
    _apply(product, fields)
    if category_id is not None:
        product.category_id = category_id
    if shipping_class_id is not None:
        product.shipping_class_id = shipping_class_id
    _mark_synced(product, platform_id, status)
    db.flush()
    return product, created


def backfill_platform_id(db: Session, entity, platform_id: Optional[str]) -> None:
    if platform_id and not entity.platform_id:
        entity.platform_id = str(platform_id)
        db.flush()
