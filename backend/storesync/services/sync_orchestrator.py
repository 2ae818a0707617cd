"""Ordered bulk import/export between the remote store and the ERP.

Stages always run in dependency order:

    categories -> shipping classes -> customers -> products -> orders

so later stages normally find their references already in place; the
resolver's recursive lookup only kicks in for partial or out-of-order data.
A failing record is counted and logged; a failing page fetch aborts the
stage it belongs to and the stages after it.
"""
from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from storesync.config import settings
from storesync.models_sqlalchemy.models import Category, Order, Product, SyncStatus
from storesync.models_sqlalchemy.sync_jobs import JobKind, SyncAction, SyncDirection, SyncOutcome
from storesync.services.entity_resolver import EntityResolver
from storesync.services.platform_client import PlatformAuthError, PlatformClient, PlatformError
from storesync.services.platform_mapping import (
    category_to_platform,
    map_status_to_platform,
    normalize_platform_id,
    product_to_platform,
    stock_to_platform,
)
from storesync.services.record_import import ImportOutcome, RecordImporter
from storesync.services.sync_ledger import SyncLedger
from storesync.utils.logger import logger


MAX_STAGE_MESSAGES = 20


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ImportStage(str, enum.Enum):
    CATEGORIES = "categories"
    SHIPPING_CLASSES = "shipping_classes"
    CUSTOMERS = "customers"
    PRODUCTS = "products"
    ORDERS = "orders"


STAGE_ORDER = [
    ImportStage.CATEGORIES,
    ImportStage.SHIPPING_CLASSES,
    ImportStage.CUSTOMERS,
    ImportStage.PRODUCTS,
    ImportStage.ORDERS,
]

STAGE_ENDPOINTS = {
    ImportStage.CATEGORIES: "products/categories",
    ImportStage.SHIPPING_CLASSES: "products/shipping_classes",
    ImportStage.CUSTOMERS: "customers",
    ImportStage.PRODUCTS: "products",
    ImportStage.ORDERS: "orders",
}

STAGE_ENTITY_TYPES = {
    ImportStage.CATEGORIES: "category",
    ImportStage.SHIPPING_CLASSES: "shipping_class",
    ImportStage.CUSTOMERS: "customer",
    ImportStage.PRODUCTS: "product",
    ImportStage.ORDERS: "order",
}

JOB_KIND_STAGES = {
    JobKind.CUSTOMERS: ImportStage.CUSTOMERS,
    JobKind.PRODUCTS: ImportStage.PRODUCTS,
    JobKind.ORDERS: ImportStage.ORDERS,
}


@dataclass
class ImportOptions:
    stages: Optional[List[ImportStage]] = None
    per_page: Optional[int] = None
    # Only import products with this remote status ("publish", "draft", ...); None = all.
    product_status: Optional[str] = "publish"
    order_status: Optional[str] = None
    overwrite_existing: bool = True

    def selected_stages(self) -> List[ImportStage]:
        wanted = {ImportStage(s) for s in self.stages} if self.stages else set(STAGE_ORDER)
        return [stage for stage in STAGE_ORDER if stage in wanted]


@dataclass
class StageCounts:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    pages: int = 0
    messages: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors += 1
        if len(self.messages) < MAX_STAGE_MESSAGES:
            self.messages.append(message)


@dataclass
class PageResult:
    page: int
    items: int
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    has_more: bool = False
    total_items: Optional[int] = None
    total_pages: Optional[int] = None
    messages: List[str] = field(default_factory=list)


@dataclass
class AggregatedResult:
    stages: Dict[str, StageCounts] = field(default_factory=dict)
    auto_created: Optional[Dict[str, int]] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    skipped_stages: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.failed_stage is None

    def totals(self) -> Dict[str, int]:
        return {
            "imported": sum(s.imported for s in self.stages.values()),
            "updated": sum(s.updated for s in self.stages.values()),
            "skipped": sum(s.skipped for s in self.stages.values()),
            "errors": sum(s.errors for s in self.stages.values()),
        }

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "stages": {name: asdict(counts) for name, counts in self.stages.items()},
            "totals": self.totals(),
            "failed_stage": self.failed_stage,
            "error": self.error,
            "skipped_stages": self.skipped_stages,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.auto_created is not None:
            data["auto_created"] = self.auto_created
        return data


@dataclass
class ExportCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    messages: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors += 1
        if len(self.messages) < MAX_STAGE_MESSAGES:
            self.messages.append(message)


class SyncOrchestrator:
    def __init__(
        self,
        db: Session,
        client: PlatformClient,
        *,
        ledger: Optional[SyncLedger] = None,
        resolver: Optional[EntityResolver] = None,
        page_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.client = client
        self.ledger = ledger or SyncLedger(db)
        self.resolver = resolver or EntityResolver(db, client, self.ledger)
        self.importer = RecordImporter(db, self.resolver, self.ledger)
        self.page_delay_seconds = (
            page_delay_seconds if page_delay_seconds is not None else settings.SYNC_PAGE_DELAY_SECONDS
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    async def run_full_import(self, options: Optional[ImportOptions] = None) -> AggregatedResult:
        return await self._run(options or ImportOptions(), track_auto_created=False)

    async def run_smart_import(self, options: Optional[ImportOptions] = None) -> AggregatedResult:
        """Full import that also reports entities created while resolving references."""
        return await self._run(options or ImportOptions(), track_auto_created=True)

    async def _run(self, options: ImportOptions, *, track_auto_created: bool) -> AggregatedResult:
        result = AggregatedResult(started_at=_now_utc())
        self.resolver.created_counts.clear()
        stages = options.selected_stages()
        logger.info(f"[orchestrator] Import started stages={[s.value for s in stages]}")

        for index, stage in enumerate(stages):
            try:
                result.stages[stage.value] = await self.run_stage(stage, options)
            except PlatformError as exc:
                logger.error(f"[orchestrator] Stage {stage.value} aborted: {exc.message}")
                result.failed_stage = stage.value
                result.error = exc.message
                result.skipped_stages = [s.value for s in stages[index + 1:]]
                break

        if track_auto_created:
            result.auto_created = dict(self.resolver.created_counts)
        result.finished_at = _now_utc()
        logger.info(f"[orchestrator] Import finished success={result.success} totals={result.totals()}")
        return result

    def _stage_params(self, stage: ImportStage, options: ImportOptions) -> Dict[str, Any]:
        if stage is ImportStage.PRODUCTS and options.product_status:
            return {"status": options.product_status}
        if stage is ImportStage.ORDERS and options.order_status:
            return {"status": options.order_status}
        return {}

    async def run_stage(self, stage: ImportStage, options: Optional[ImportOptions] = None) -> StageCounts:
        options = options or ImportOptions()
        per_page = options.per_page or settings.SYNC_PAGE_SIZE
        counts = StageCounts()
        async for page in self.client.iter_pages(
            STAGE_ENDPOINTS[stage], per_page, params=self._stage_params(stage, options)
        ):
            await self._process_records(stage, page.items, counts, overwrite=options.overwrite_existing)
            counts.pages += 1
            logger.info(
                "[orchestrator] %s page %s: imported=%s updated=%s errors=%s",
                stage.value,
                page.page,
                counts.imported,
                counts.updated,
                counts.errors,
            )
            if page.has_more and self.page_delay_seconds:
                await self._sleep(self.page_delay_seconds)
        return counts

    async def import_page(
        self,
        kind: JobKind,
        page: int,
        per_page: int,
        *,
        overwrite: bool = True,
    ) -> PageResult:
        """Fetch and import one page for a resumable job. Fetch errors propagate."""
        stage = JOB_KIND_STAGES[JobKind(kind)]
        fetched = await self.client.fetch_page(STAGE_ENDPOINTS[stage], page, per_page)
        counts = StageCounts()
        await self._process_records(stage, fetched.items, counts, overwrite=overwrite)
        return PageResult(
            page=page,
            items=len(fetched.items),
            imported=counts.imported,
            updated=counts.updated,
            skipped=counts.skipped,
            errors=counts.errors,
            has_more=fetched.has_more,
            total_items=fetched.total_items,
            total_pages=fetched.total_pages,
            messages=counts.messages,
        )

    async def _process_records(
        self,
        stage: ImportStage,
        records: List[Dict[str, Any]],
        counts: StageCounts,
        *,
        overwrite: bool,
    ) -> None:
        handler = {
            ImportStage.CATEGORIES: self.importer.import_category,
            ImportStage.SHIPPING_CLASSES: self.importer.import_shipping_class,
            ImportStage.CUSTOMERS: self.importer.import_customer,
            ImportStage.PRODUCTS: self.importer.import_product,
            ImportStage.ORDERS: self.importer.import_order,
        }[stage]

        for record in records:
            try:
                outcome = await handler(record, overwrite=overwrite)
            except PlatformAuthError:
                self.db.rollback()
                raise
            except Exception as exc:
                self.db.rollback()
                platform_id = normalize_platform_id(record.get("id")) if isinstance(record, dict) else None
                message = f"{STAGE_ENTITY_TYPES[stage]} {platform_id}: {exc}"
                logger.warning(f"[orchestrator] Record failed: {message}")
                counts.add_error(message)
                self.ledger.record(
                    direction=SyncDirection.FROM_PLATFORM,
                    entity_type=STAGE_ENTITY_TYPES[stage],
                    entity_id=platform_id,
                    action=SyncAction.IMPORT,
                    outcome=SyncOutcome.FAILED,
                    request={"platform_id": platform_id},
                    error=str(exc),
                )
                continue

            if outcome is ImportOutcome.IMPORTED:
                counts.imported += 1
            elif outcome is ImportOutcome.UPDATED:
                counts.updated += 1
            else:
                counts.skipped += 1

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_product(self, product_id: str) -> Product:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            raise LookupError(f"Product {product_id} not found")

        category_ids = []
        if product.category is not None and product.category.platform_id:
            category_ids.append(product.category.platform_id)
        body = product_to_platform(product, category_platform_ids=category_ids)
        action_path = f"products/{product.platform_id}" if product.platform_id else "products"
        started = time.monotonic()
        try:
            if product.platform_id:
                response = await self.client.put(action_path, body)
            else:
                response = await self.client.post(action_path, body)
        except PlatformError as exc:
            product.sync_status = SyncStatus.ERROR.value
            self.db.commit()
            self.ledger.record(
                direction=SyncDirection.TO_PLATFORM,
                entity_type="product",
                entity_id=product.id,
                action=SyncAction.EXPORT,
                outcome=SyncOutcome.FAILED,
                request=body,
                error=exc.message,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise

        remote_id = normalize_platform_id((response or {}).get("id")) if isinstance(response, dict) else None
        if remote_id:
            product.platform_id = remote_id
        product.sync_status = SyncStatus.SYNCED.value
        product.last_sync_at = _now_utc()
        self.db.commit()
        self.ledger.record(
            direction=SyncDirection.TO_PLATFORM,
            entity_type="product",
            entity_id=product.id,
            action=SyncAction.EXPORT,
            outcome=SyncOutcome.SUCCESS,
            request=body,
            response={"id": remote_id},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(f"[orchestrator] Exported product {product.sku} -> remote {product.platform_id}")
        return product

    async def export_products(
        self,
        product_ids: Optional[List[str]] = None,
        *,
        include_inventory: bool = False,
        per_page: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Push local products to the store page by page.

        Without ``product_ids`` every web-active product is exported. Each
        product gets its own ledger entry through :meth:`export_product`; a
        rejected product is counted and the export moves on, but rejected
        credentials stop it.
        """
        per_page = per_page or settings.SYNC_PAGE_SIZE
        query = self.db.query(Product.id)
        if product_ids:
            query = query.filter(Product.id.in_(product_ids))
        else:
            query = query.filter(Product.web_active.is_(True))
        ids = [row.id for row in query.order_by(Product.sku).all()]
        logger.info(f"[orchestrator] Product export started products={len(ids)}")

        counts = ExportCounts()
        for offset in range(0, len(ids), per_page):
            for product_id in ids[offset:offset + per_page]:
                product = self.db.query(Product).filter(Product.id == product_id).first()
                known_remotely = bool(product.platform_id)
                try:
                    await self.export_product(product_id)
                except PlatformAuthError:
                    raise
                except PlatformError as exc:
                    counts.add_error(f"{product.sku}: {exc.message}")
                    continue
                if known_remotely:
                    counts.updated += 1
                else:
                    counts.created += 1
            if offset + per_page < len(ids) and self.page_delay_seconds:
                await self._sleep(self.page_delay_seconds)

        inventory = await self.push_inventory() if include_inventory else None
        logger.info(
            f"[orchestrator] Product export finished created={counts.created} "
            f"updated={counts.updated} errors={counts.errors}"
        )
        return {"products": asdict(counts), "inventory": asdict(inventory) if inventory else None}

    async def push_inventory(self, product_id: Optional[str] = None) -> ExportCounts:
        """Send local stock levels to the store for products it already knows."""
        if product_id is not None:
            product = self.db.query(Product).filter(Product.id == product_id).first()
            if product is None:
                raise LookupError(f"Product {product_id} not found")
            if not product.platform_id:
                raise ValueError(f"Product {product.sku} has no remote id")
            products = [product]
        else:
            products = self.db.query(Product).filter(Product.platform_id.isnot(None)).order_by(Product.sku).all()

        counts = ExportCounts()
        for product in products:
            if product.stock_quantity is None:
                counts.skipped += 1
                continue
            body = stock_to_platform(product.stock_quantity)
            started = time.monotonic()
            try:
                await self.client.put(f"products/{product.platform_id}", body)
            except PlatformError as exc:
                self._record_stock_push(product, body, SyncOutcome.FAILED, started, error=exc.message)
                if product_id is not None or isinstance(exc, PlatformAuthError):
                    raise
                counts.add_error(f"{product.sku}: {exc.message}")
                continue
            product.last_sync_at = _now_utc()
            self.db.commit()
            counts.updated += 1
            self._record_stock_push(product, body, SyncOutcome.SUCCESS, started)
            logger.info(f"[orchestrator] Stock for {product.sku} pushed: {product.stock_quantity}")
        return counts

    def _record_stock_push(
        self,
        product: Product,
        body: Dict[str, Any],
        outcome: SyncOutcome,
        started: float,
        *,
        error: Optional[str] = None,
    ) -> None:
        self.ledger.record(
            direction=SyncDirection.TO_PLATFORM,
            entity_type="product",
            entity_id=product.id,
            action=SyncAction.UPDATE,
            outcome=outcome,
            request=body,
            error=error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def export_categories(self) -> ExportCounts:
        """Push every local category to the store, parents before children."""
        counts = ExportCounts()
        categories = self.db.query(Category).all()
        by_id = {c.id: c for c in categories}

        def depth(category: Category) -> int:
            level, seen, current = 0, set(), category
            while current.parent_id and current.parent_id in by_id and current.id not in seen:
                seen.add(current.id)
                current = by_id[current.parent_id]
                level += 1
            return level

        for category in sorted(categories, key=depth):
            parent = by_id.get(category.parent_id) if category.parent_id else None
            body = category_to_platform(category, parent_platform_id=parent.platform_id if parent else None)
            try:
                if category.platform_id:
                    await self.client.put(f"products/categories/{category.platform_id}", body)
                    counts.updated += 1
                else:
                    response = await self.client.post("products/categories", body)
                    if isinstance(response, dict):
                        category.platform_id = normalize_platform_id(response.get("id"))
                    counts.created += 1
                category.sync_status = SyncStatus.SYNCED.value
                category.last_sync_at = _now_utc()
                self.db.commit()
                outcome, error = SyncOutcome.SUCCESS, None
            except PlatformError as exc:
                self.db.rollback()
                counts.errors += 1
                counts.messages.append(f"{category.slug}: {exc.message}")
                outcome, error = SyncOutcome.FAILED, exc.message
            self.ledger.record(
                direction=SyncDirection.TO_PLATFORM,
                entity_type="category",
                entity_id=category.id,
                action=SyncAction.EXPORT,
                outcome=outcome,
                request=body,
                error=error,
            )
        return counts

    async def push_order_status(self, order_id: str) -> Dict[str, Any]:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise LookupError(f"Order {order_id} not found")
        if not order.platform_id:
            raise ValueError(f"Order {order.order_number} has no remote id")

        body = {"status": map_status_to_platform(order.status)}
        with self.ledger.timed(
            direction=SyncDirection.TO_PLATFORM,
            entity_type="order",
            action=SyncAction.UPDATE,
            request=body,
        ) as entry:
            entry.entity_id = order.id
            await self.client.put(f"orders/{order.platform_id}", body)
            order.platform_status = body["status"]
            order.last_sync_at = _now_utc()
            self.db.commit()
            entry.response = body
        return {"order_id": order.id, "platform_id": order.platform_id, "status": body["status"]}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def sync_status(self) -> Dict[str, Any]:
        configured = self.client.is_configured()
        connected = await self.client.check_connection() if configured else False
        last_sync = self.ledger.last_success_at()
        total = self.db.query(Product).count()
        synced = (
            self.db.query(Product)
            .filter(Product.platform_id.isnot(None), Product.sync_status == SyncStatus.SYNCED.value)
            .count()
        )
        pending = self.db.query(Product).filter(Product.sync_status == SyncStatus.PENDING.value).count()
        return {
            "configured": configured,
            "connected": connected,
            "last_sync": last_sync.isoformat() if last_sync else None,
            "products": {"total": total, "synced": synced, "pending": pending},
        }
