"""Make sure entities referenced by a remote record exist locally.

``EntityResolver.ensure`` is the single entry point. For a kind and an
external reference it returns the local id, creating the entity (and, first,
anything that entity depends on) when it is missing:

1. match by remote id;
2. match by natural key (slug, SKU, email) and backfill the remote id;
3. fetch the full record from the store, resolve its parents, create it;
4. if the fetch fails, create a placeholder from the caller's inline data and
   flag it PENDING so a later sync can complete it.

Recursion is bounded by ``max_depth`` and guarded against cycles.
"""
from __future__ import annotations

import enum
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Tuple

from sqlalchemy.orm import Session

from storesync.config import settings
from storesync.models_sqlalchemy.models import SyncStatus
from storesync.models_sqlalchemy.sync_jobs import SyncAction, SyncDirection, SyncOutcome
from storesync.services import entity_store
from storesync.services.platform_client import PlatformClient, PlatformError, PlatformNotConfiguredError
from storesync.services.platform_mapping import (
    map_category,
    map_customer,
    map_product,
    map_shipping_class,
    normalize_platform_id,
    slugify,
    to_decimal,
)
from storesync.services.sync_ledger import SyncLedger
from storesync.utils.logger import logger


class EntityKind(str, enum.Enum):
    CATEGORY = "category"
    SHIPPING_CLASS = "shipping_class"
    CUSTOMER = "customer"
    PRODUCT = "product"


REMOTE_PATHS = {
    EntityKind.CATEGORY: "products/categories/{id}",
    EntityKind.SHIPPING_CLASS: "products/shipping_classes/{id}",
    EntityKind.CUSTOMER: "customers/{id}",
    EntityKind.PRODUCT: "products/{id}",
}


class ResolutionError(Exception):
    """A reference could not be resolved (depth cap, cycle, placeholders disabled)."""


@dataclass
class ExternalRef:
    platform_id: Optional[str] = None
    natural_key: Optional[str] = None
    # Whatever the caller already knows (line item name/price, order billing
    # block); used for guest customers and placeholders.
    inline: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.platform_id = normalize_platform_id(self.platform_id)
        if isinstance(self.natural_key, str):
            self.natural_key = self.natural_key.strip() or None


@dataclass
class Resolution:
    local_id: str
    created: bool
    placeholder: bool = False


class EntityResolver:
    def __init__(
        self,
        db: Session,
        client: PlatformClient,
        ledger: Optional[SyncLedger] = None,
        *,
        max_depth: Optional[int] = None,
        placeholders_enabled: Optional[bool] = None,
    ):
        self.db = db
        self.client = client
        self.ledger = ledger or SyncLedger(db)
        self.max_depth = max_depth if max_depth is not None else settings.RESOLVER_MAX_DEPTH
        self.placeholders_enabled = (
            placeholders_enabled if placeholders_enabled is not None else settings.RESOLVER_PLACEHOLDERS_ENABLED
        )
        # Entities created as a side effect of resolution, per kind.
        self.created_counts: Counter = Counter()
        self._in_progress: Set[Tuple[EntityKind, str]] = set()

    async def ensure(self, kind, ref: ExternalRef, *, depth: int = 0) -> Resolution:
        kind = EntityKind(kind)
        if depth > self.max_depth:
            raise ResolutionError(f"{kind.value} {ref.platform_id}: dependency depth exceeds {self.max_depth}")

        existing = self._find(kind, platform_id=ref.platform_id)
        if existing is not None:
            return Resolution(existing.id, created=False)

        if ref.natural_key:
            existing = self._find(kind, natural_key=ref.natural_key)
            if existing is not None:
                entity_store.backfill_platform_id(self.db, existing, ref.platform_id)
                self.db.commit()
                return Resolution(existing.id, created=False)

        if ref.platform_id is None:
            return self._create_from_inline(kind, ref)

        key = (kind, ref.platform_id)
        if key in self._in_progress:
            raise ResolutionError(f"{kind.value} {ref.platform_id}: circular reference")
        self._in_progress.add(key)
        try:
            try:
                remote = await self.client.get(REMOTE_PATHS[kind].format(id=ref.platform_id))
            except PlatformNotConfiguredError:
                raise
            except PlatformError as exc:
                logger.warning(
                    "[resolver] Fetching %s %s failed (%s); creating placeholder",
                    kind.value,
                    ref.platform_id,
                    exc.message,
                )
                return self._create_placeholder(kind, ref, reason=exc.message)
            if not isinstance(remote, dict):
                return self._create_placeholder(kind, ref, reason="unexpected response body")
            return await self._create_from_remote(kind, ref, remote, depth)
        finally:
            self._in_progress.discard(key)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _find(self, kind: EntityKind, *, platform_id: Optional[str] = None, natural_key: Optional[str] = None):
        if kind is EntityKind.CATEGORY:
            return entity_store.find_category(self.db, platform_id=platform_id, slug=natural_key)
        if kind is EntityKind.SHIPPING_CLASS:
            return entity_store.find_shipping_class(self.db, platform_id=platform_id, slug=natural_key)
        if kind is EntityKind.CUSTOMER:
            return entity_store.find_customer(self.db, platform_id=platform_id, email=natural_key)
        return entity_store.find_product(self.db, platform_id=platform_id, sku=natural_key)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _create_from_remote(
        self, kind: EntityKind, ref: ExternalRef, remote: Dict[str, Any], depth: int
    ) -> Resolution:
        platform_id = normalize_platform_id(remote.get("id")) or ref.platform_id

        if kind is EntityKind.CATEGORY:
            parent_id = await self.resolve_parent_category(remote, depth=depth)
            entity, created = entity_store.upsert_category(
                self.db, map_category(remote), platform_id=platform_id, parent_id=parent_id
            )
        elif kind is EntityKind.SHIPPING_CLASS:
            entity, created = entity_store.upsert_shipping_class(
                self.db, map_shipping_class(remote), platform_id=platform_id
            )
        elif kind is EntityKind.CUSTOMER:
            entity, created = entity_store.upsert_customer(self.db, map_customer(remote), platform_id=platform_id)
        else:
            category_id, shipping_class_id = await self.resolve_product_dependencies(remote, depth=depth)
            entity, created = entity_store.upsert_product(
                self.db,
                map_product(remote),
                platform_id=platform_id,
                category_id=category_id,
                shipping_class_id=shipping_class_id,
            )
        self.db.commit()
        if created:
            self._record_created(kind, entity.id, outcome=SyncOutcome.SUCCESS, request={"platform_id": platform_id})
        logger.info(f"[resolver] {kind.value} {platform_id} -> {entity.id} created={created}")
        return Resolution(entity.id, created=created)

    def _create_from_inline(self, kind: EntityKind, ref: ExternalRef) -> Resolution:
        # Guest checkout: the order carries everything we know about the buyer.
        if kind is EntityKind.CUSTOMER and (ref.inline.get("email") or ref.inline.get("last_name")):
            entity, created = entity_store.upsert_customer(self.db, dict(ref.inline), platform_id=None)
            self.db.commit()
            if created:
                self._record_created(kind, entity.id, outcome=SyncOutcome.SUCCESS, request={"guest": True})
            return Resolution(entity.id, created=created)
        return self._create_placeholder(kind, ref, reason="no remote id")

    def _create_placeholder(self, kind: EntityKind, ref: ExternalRef, *, reason: str) -> Resolution:
        if not self.placeholders_enabled:
            raise ResolutionError(f"{kind.value} {ref.platform_id or ref.natural_key}: {reason}")

        inline = ref.inline
        label = ref.platform_id or "0"
        if kind is EntityKind.CATEGORY:
            name = inline.get("name") or f"Category {label}"
            fields = {"name": name, "slug": inline.get("slug") or ref.natural_key or slugify(name)}
            entity, created = entity_store.upsert_category(
                self.db, fields, platform_id=ref.platform_id, status=SyncStatus.PENDING
            )
        elif kind is EntityKind.SHIPPING_CLASS:
            name = inline.get("name") or f"Shipping class {label}"
            fields = {"name": name, "slug": ref.natural_key or slugify(name)}
            entity, created = entity_store.upsert_shipping_class(
                self.db, fields, platform_id=ref.platform_id, status=SyncStatus.PENDING
            )
        elif kind is EntityKind.CUSTOMER:
            fields = dict(inline)
            if not fields.get("last_name") and not fields.get("email"):
                fields["last_name"] = f"Customer {label}"
            entity, created = entity_store.upsert_customer(
                self.db, fields, platform_id=ref.platform_id, status=SyncStatus.PENDING
            )
        else:
            sku = inline.get("sku") or ref.natural_key or f"PLATFORM-{label}-{int(time.time() * 1000)}"
            fields = {
                "sku": sku,
                "name": inline.get("name") or f"Product {label}",
                "price": to_decimal(inline.get("price")),
                "web_active": False,
            }
            entity, created = entity_store.upsert_product(
                self.db, fields, platform_id=ref.platform_id, status=SyncStatus.PENDING
            )
        self.db.commit()
        if created:
            self._record_created(
                kind, entity.id, outcome=SyncOutcome.PENDING, request={"platform_id": ref.platform_id}, error=reason
            )
        return Resolution(entity.id, created=created, placeholder=True)

    def _record_created(
        self,
        kind: EntityKind,
        local_id: str,
        *,
        outcome: SyncOutcome,
        request: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        self.created_counts[kind.value] += 1
        self.ledger.record(
            direction=SyncDirection.FROM_PLATFORM,
            entity_type=kind.value,
            entity_id=local_id,
            action=SyncAction.CREATE,
            outcome=outcome,
            request=request,
            error=error,
        )

    # ------------------------------------------------------------------
    # Dependencies of remote records, shared with bulk import
    # ------------------------------------------------------------------

    async def resolve_parent_category(self, remote: Dict[str, Any], *, depth: int = 0) -> Optional[str]:
        parent_platform_id = normalize_platform_id(remote.get("parent"))
        if parent_platform_id is None:
            return None
        resolution = await self.ensure(EntityKind.CATEGORY, ExternalRef(parent_platform_id), depth=depth + 1)
        return resolution.local_id

    async def resolve_product_dependencies(
        self, remote: Dict[str, Any], *, depth: int = 0
    ) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(category_id, shipping_class_id)`` for a remote product."""
        category_id = None
        for index, category in enumerate(remote.get("categories") or []):
            ref = ExternalRef(
                category.get("id"),
                natural_key=category.get("slug"),
                inline={"name": category.get("name"), "slug": category.get("slug")},
            )
            if ref.platform_id is None and ref.natural_key is None:
                continue
            resolution = await self.ensure(EntityKind.CATEGORY, ref, depth=depth + 1)
            if index == 0 or category_id is None:
                category_id = resolution.local_id

        shipping_class_id = None
        class_ref = ExternalRef(remote.get("shipping_class_id"), natural_key=remote.get("shipping_class") or None)
        if class_ref.platform_id or class_ref.natural_key:
            resolution = await self.ensure(EntityKind.SHIPPING_CLASS, class_ref, depth=depth + 1)
            shipping_class_id = resolution.local_id
        return category_id, shipping_class_id

