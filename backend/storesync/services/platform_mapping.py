"""Translation between remote store records and local ERP fields.

All mappers are pure functions over the JSON the store returns; they never
touch the database. Both bulk import and webhook ingestion go through the
same order status table here.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from storesync.models_sqlalchemy.models import OrderStatus


class RecordMappingError(ValueError):
    """A remote record is missing a field the local model requires."""


PLATFORM_TO_INTERNAL_ORDER_STATUS = {
    "pending": OrderStatus.PENDING.value,
    "processing": OrderStatus.CONFIRMED.value,
    "on-hold": OrderStatus.PENDING.value,
    "completed": OrderStatus.DELIVERED.value,
    "cancelled": OrderStatus.CANCELLED.value,
    "refunded": OrderStatus.REFUNDED.value,
    "failed": OrderStatus.CANCELLED.value,
}

INTERNAL_TO_PLATFORM_ORDER_STATUS = {
    OrderStatus.PENDING.value: "pending",
    OrderStatus.CONFIRMED.value: "processing",
    OrderStatus.PROCESSING.value: "processing",
    OrderStatus.READY.value: "processing",
    OrderStatus.SHIPPED.value: "completed",
    OrderStatus.DELIVERED.value: "completed",
    OrderStatus.CANCELLED.value: "cancelled",
    OrderStatus.REFUNDED.value: "refunded",
}


def map_order_status(platform_status: Optional[str]) -> str:
    return PLATFORM_TO_INTERNAL_ORDER_STATUS.get((platform_status or "").lower(), OrderStatus.PENDING.value)


def map_status_to_platform(internal_status: str) -> str:
    return INTERNAL_TO_PLATFORM_ORDER_STATUS.get(internal_status, "pending")


def normalize_platform_id(value: Any) -> Optional[str]:
    """Return the remote id as a string, or None for missing/zero ids."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if text in ("", "0"):
        return None
    return text


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value in (None, ""):
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(default)


def parse_platform_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "item"


def _require(record: Dict[str, Any], key: str, kind: str) -> Any:
    value = record.get(key)
    if value in (None, ""):
        raise RecordMappingError(f"{kind} record {record.get('id')!r} is missing '{key}'")
    return value


def _address(raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    keys = ("first_name", "last_name", "company", "address_1", "address_2", "city", "state", "postcode", "country")
    address = {k: raw.get(k) or "" for k in keys}
    if "email" in raw:
        address["email"] = raw.get("email") or ""
    if "phone" in raw:
        address["phone"] = raw.get("phone") or ""
    if not any(address.values()):
        return None
    return address


def map_category(record: Dict[str, Any]) -> Dict[str, Any]:
    name = _require(record, "name", "category")
    return {
        "name": name,
        "slug": record.get("slug") or slugify(name),
        "description": record.get("description") or None,
    }


def map_shipping_class(record: Dict[str, Any]) -> Dict[str, Any]:
    name = _require(record, "name", "shipping class")
    return {
        "name": name,
        "slug": record.get("slug") or slugify(name),
        "description": record.get("description") or None,
    }


def map_customer(record: Dict[str, Any]) -> Dict[str, Any]:
    billing = record.get("billing") or {}
    email = record.get("email") or billing.get("email")
    if not email:
        raise RecordMappingError(f"customer record {record.get('id')!r} has no email")
    return {
        "first_name": record.get("first_name") or billing.get("first_name") or None,
        "last_name": record.get("last_name") or billing.get("last_name") or None,
        "business_name": billing.get("company") or None,
        "email": email.strip().lower(),
        "phone": billing.get("phone") or None,
        "billing_address": _address(billing),
        "shipping_address": _address(record.get("shipping")),
    }


def map_customer_from_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Customer fields from an order's billing block (guest checkout)."""
    billing = order.get("billing") or {}
    email = (billing.get("email") or "").strip().lower() or None
    return {
        "first_name": billing.get("first_name") or None,
        "last_name": billing.get("last_name") or None,
        "business_name": billing.get("company") or None,
        "email": email,
        "phone": billing.get("phone") or None,
        "billing_address": _address(billing),
        "shipping_address": _address(order.get("shipping")),
    }


def map_product(record: Dict[str, Any]) -> Dict[str, Any]:
    name = _require(record, "name", "product")
    price = to_decimal(record.get("price") or record.get("regular_price"))
    sale_price = record.get("sale_price")
    stock = record.get("stock_quantity")
    return {
        "name": name,
        "sku": (record.get("sku") or "").strip() or None,
        "description": record.get("description") or None,
        "short_description": record.get("short_description") or None,
        "price": price,
        "regular_price": to_decimal(record.get("regular_price"), default=str(price)),
        "sale_price": to_decimal(sale_price) if sale_price not in (None, "") else None,
        "weight": to_decimal(record.get("weight")) if record.get("weight") not in (None, "") else None,
        "stock_quantity": int(stock) if isinstance(stock, (int, float)) else None,
        "web_active": record.get("status", "publish") == "publish",
    }


def map_order(record: Dict[str, Any]) -> Dict[str, Any]:
    number = record.get("number") or record.get("id")
    if number in (None, ""):
        raise RecordMappingError("order record has neither 'number' nor 'id'")
    total = to_decimal(record.get("total"))
    shipping = to_decimal(record.get("shipping_total"))
    tax = to_decimal(record.get("total_tax"))
    discount = to_decimal(record.get("discount_total"))
    return {
        "order_number": f"WP-{number}",
        "status": map_order_status(record.get("status")),
        "platform_status": record.get("status"),
        "payment_status": "paid" if record.get("date_paid") else "pending",
        "payment_method": record.get("payment_method_title") or record.get("payment_method") or None,
        "subtotal": total - shipping - tax + discount,
        "discount": discount,
        "tax": tax,
        "shipping": shipping,
        "total": total,
        "currency": record.get("currency") or "EUR",
        "billing_address": _address(record.get("billing")),
        "shipping_address": _address(record.get("shipping")),
        "customer_note": record.get("customer_note") or None,
        "order_date": parse_platform_datetime(record.get("date_created_gmt") or record.get("date_created")),
    }


def map_line_item(item: Dict[str, Any]) -> Dict[str, Any]:
    quantity = int(item.get("quantity") or 1)
    subtotal = to_decimal(item.get("subtotal"))
    unit_price = to_decimal(item.get("price")) if item.get("price") not in (None, "") else None
    if unit_price is None:
        unit_price = subtotal / quantity if quantity else Decimal("0")
    return {
        "product_name": item.get("name") or "Unnamed item",
        "sku": (item.get("sku") or "").strip() or None,
        "quantity": quantity,
        "unit_price": unit_price,
        "subtotal": subtotal,
        "tax": to_decimal(item.get("total_tax")),
        "total": to_decimal(item.get("total")),
        "platform_line_item_id": normalize_platform_id(item.get("id")),
    }


def product_to_platform(product, *, category_platform_ids=None) -> Dict[str, Any]:
    """Build the JSON body used to create/update a product on the store."""
    body: Dict[str, Any] = {
        "name": product.name,
        "sku": product.sku,
        "regular_price": str(product.regular_price if product.regular_price is not None else product.price),
        "description": product.description or "",
        "short_description": product.short_description or "",
        "status": "publish" if product.web_active else "draft",
    }
    if product.sale_price is not None:
        body["sale_price"] = str(product.sale_price)
    if product.weight is not None:
        body["weight"] = str(product.weight)
    if product.stock_quantity is not None:
        body["manage_stock"] = True
        body["stock_quantity"] = product.stock_quantity
    if category_platform_ids:
        body["categories"] = [{"id": int(cid) if str(cid).isdigit() else cid} for cid in category_platform_ids]
    return body


def category_to_platform(category, *, parent_platform_id: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "name": category.name,
        "slug": category.slug,
        "description": category.description or "",
    }
    if parent_platform_id:
        body["parent"] = int(parent_platform_id) if parent_platform_id.isdigit() else parent_platform_id
    return body


def stock_to_platform(quantity: int) -> Dict[str, Any]:
    return {
        "manage_stock": True,
        "stock_quantity": quantity,
        "stock_status": "instock" if quantity > 0 else "outofstock",
    }
