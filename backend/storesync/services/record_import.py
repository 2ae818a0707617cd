"""Idempotent upsert of single remote records into the ERP tables.

The same :class:`RecordImporter` serves bulk pages, resumable jobs and
webhook deliveries, so a record produces the same local state whichever
path it arrives through.
"""
from __future__ import annotations

import enum
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from storesync.models_sqlalchemy.models import Order, OrderItem, SyncStatus
from storesync.models_sqlalchemy.sync_jobs import SyncAction, SyncDirection, SyncOutcome
from storesync.services import entity_store
from storesync.services.entity_resolver import EntityKind, EntityResolver, ExternalRef
from storesync.services.platform_mapping import (
    map_category,
    map_customer,
    map_customer_from_order,
    map_line_item,
    map_order,
    map_product,
    map_shipping_class,
    normalize_platform_id,
)
from storesync.services.sync_ledger import SyncLedger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ImportOutcome(str, enum.Enum):
    IMPORTED = "imported"
    UPDATED = "updated"
    SKIPPED = "skipped"


class RecordImporter:
    def __init__(self, db: Session, resolver: EntityResolver, ledger: Optional[SyncLedger] = None):
        self.db = db
        self.resolver = resolver
        self.ledger = ledger or resolver.ledger

    def _finish(
        self,
        entity_type: str,
        entity_id: str,
        created: bool,
        *,
        platform_id: Optional[str],
        started: float,
    ) -> ImportOutcome:
        self.db.commit()
        self.ledger.record(
            direction=SyncDirection.FROM_PLATFORM,
            entity_type=entity_type,
            entity_id=entity_id,
            action=SyncAction.IMPORT,
            outcome=SyncOutcome.SUCCESS,
            request={"platform_id": platform_id},
            response={"created": created},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return ImportOutcome.IMPORTED if created else ImportOutcome.UPDATED

    def _skip_existing(self, existing, overwrite: bool) -> bool:
        return existing is not None and not overwrite

    async def import_category(self, record: Dict[str, Any], *, overwrite: bool = True) -> ImportOutcome:
        started = time.monotonic()
        platform_id = normalize_platform_id(record.get("id"))
        fields = map_category(record)
        existing = entity_store.find_category(self.db, platform_id=platform_id, slug=fields["slug"])
        if self._skip_existing(existing, overwrite):
            return ImportOutcome.SKIPPED
        parent_id = await self.resolver.resolve_parent_category(record)
        category, created = entity_store.upsert_category(
            self.db, fields, platform_id=platform_id, parent_id=parent_id
        )
        return self._finish("category", category.id, created, platform_id=platform_id, started=started)

    async def import_shipping_class(self, record: Dict[str, Any], *, overwrite: bool = True) -> ImportOutcome:
        started = time.monotonic()
        platform_id = normalize_platform_id(record.get("id"))
        fields = map_shipping_class(record)
        existing = entity_store.find_shipping_class(self.db, platform_id=platform_id, slug=fields["slug"])
        if self._skip_existing(existing, overwrite):
            return ImportOutcome.SKIPPED
        shipping_class, created = entity_store.upsert_shipping_class(self.db, fields, platform_id=platform_id)
        return self._finish("shipping_class", shipping_class.id, created, platform_id=platform_id, started=started)

    async def import_customer(self, record: Dict[str, Any], *, overwrite: bool = True) -> ImportOutcome:
        started = time.monotonic()
        platform_id = normalize_platform_id(record.get("id"))
        fields = map_customer(record)
        existing = entity_store.find_customer(self.db, platform_id=platform_id, email=fields["email"])
        if self._skip_existing(existing, overwrite):
            return ImportOutcome.SKIPPED
        customer, created = entity_store.upsert_customer(self.db, fields, platform_id=platform_id)
        return self._finish("customer", customer.id, created, platform_id=platform_id, started=started)

    async def import_product(self, record: Dict[str, Any], *, overwrite: bool = True) -> ImportOutcome:
        started = time.monotonic()
        platform_id = normalize_platform_id(record.get("id"))
        fields = map_product(record)
        existing = entity_store.find_product(self.db, platform_id=platform_id, sku=fields["sku"])
        if self._skip_existing(existing, overwrite):
            return ImportOutcome.SKIPPED
        category_id, shipping_class_id = await self.resolver.resolve_product_dependencies(record)
        product, created = entity_store.upsert_product(
            self.db,
            fields,
            platform_id=platform_id,
            category_id=category_id,
            shipping_class_id=shipping_class_id,
        )
        return self._finish("product", product.id, created, platform_id=platform_id, started=started)

    async def import_order(self, record: Dict[str, Any], *, overwrite: bool = True) -> ImportOutcome:
        """Create the order with its customer and products, or refresh an existing one.

        An existing order only has its status fields refreshed; lines and totals
        are left as first imported.
        """
        started = time.monotonic()
        platform_id = normalize_platform_id(record.get("id"))
        fields = map_order(record)

        existing = entity_store.find_order(self.db, platform_id=platform_id, order_number=fields["order_number"])
        if existing is not None:
            if not overwrite:
                return ImportOutcome.SKIPPED
            existing.status = fields["status"]
            existing.platform_status = fields["platform_status"]
            existing.payment_status = fields["payment_status"]
            existing.customer_note = fields["customer_note"]
            if platform_id and not existing.platform_id:
                existing.platform_id = platform_id
            existing.sync_status = SyncStatus.SYNCED.value
            existing.last_sync_at = _now_utc()
            return self._finish("order", existing.id, False, platform_id=platform_id, started=started)

        guest = map_customer_from_order(record)
        customer = await self.resolver.ensure(
            EntityKind.CUSTOMER,
            ExternalRef(record.get("customer_id"), natural_key=guest.get("email"), inline=guest),
        )

        lines = []
        for item in record.get("line_items") or []:
            line = map_line_item(item)
            product = await self.resolver.ensure(
                EntityKind.PRODUCT,
                ExternalRef(
                    item.get("product_id"),
                    natural_key=line["sku"],
                    inline={"name": line["product_name"], "sku": line["sku"], "price": line["unit_price"]},
                ),
            )
            lines.append((line, product.local_id))

        order = Order(id=str(uuid4()), customer_id=customer.local_id, source="PLATFORM", platform_id=platform_id)
        for key, value in fields.items():
            setattr(order, key, value)
        order.sync_status = SyncStatus.SYNCED.value
        order.last_sync_at = _now_utc()
        for line, product_id in lines:
            order.items.append(OrderItem(id=str(uuid4()), product_id=product_id, **line))
        self.db.add(order)
        self.db.flush()
        return self._finish("order", order.id, True, platform_id=platform_id, started=started)
