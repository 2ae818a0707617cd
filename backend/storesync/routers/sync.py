from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storesync.models_sqlalchemy import get_db
from storesync.services.connector_settings import generate_webhook_secret, save_connector_settings
from storesync.services.container import ConnectorServices, get_services
from storesync.services.platform_client import PlatformError
from storesync.services.sync_ledger import SyncLedger, serialize_entry
from storesync.services.sync_orchestrator import ImportOptions, ImportStage, SyncOrchestrator
from storesync.utils.logger import logger


router = APIRouter(prefix="/sync", tags=["sync"])


class ImportRequest(BaseModel):
    stages: Optional[List[ImportStage]] = None
    per_page: Optional[int] = None
    product_status: Optional[str] = "publish"
    order_status: Optional[str] = None
    overwrite_existing: bool = True

    def to_options(self) -> ImportOptions:
        return ImportOptions(
            stages=self.stages,
            per_page=self.per_page,
            product_status=self.product_status,
            order_status=self.order_status,
            overwrite_existing=self.overwrite_existing,
        )


class ConnectorSettingsRequest(BaseModel):
    base_url: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    sync_enabled: Optional[bool] = None


def _orchestrator(db: Session, services: ConnectorServices) -> SyncOrchestrator:
    if not services.client.is_configured():
        raise HTTPException(status_code=400, detail="Remote store connection is not configured")
    return SyncOrchestrator(db, services.client)


@router.post("/import/full")
async def run_full_import(
    payload: Optional[ImportRequest] = None,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    options = (payload or ImportRequest()).to_options()
    result = await _orchestrator(db, services).run_full_import(options)
    return result.to_dict()


@router.post("/import/smart")
async def run_smart_import(
    payload: Optional[ImportRequest] = None,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    """Full import that also reports how many dependencies were auto-created."""
    options = (payload or ImportRequest()).to_options()
    result = await _orchestrator(db, services).run_smart_import(options)
    return result.to_dict()


class ProductExportRequest(BaseModel):
    product_ids: Optional[List[str]] = None
    include_inventory: bool = False
    per_page: Optional[int] = None


class InventoryPushRequest(BaseModel):
    product_id: Optional[str] = None


@router.post("/export/products")
async def export_products(
    payload: Optional[ProductExportRequest] = None,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    """Bulk export. Without ``product_ids`` every web-active product is sent."""
    payload = payload or ProductExportRequest()
    try:
        return await _orchestrator(db, services).export_products(
            payload.product_ids,
            include_inventory=payload.include_inventory,
            per_page=payload.per_page,
        )
    except PlatformError as exc:
        raise HTTPException(status_code=502, detail=exc.message)


@router.post("/export/inventory")
async def push_inventory(
    payload: Optional[InventoryPushRequest] = None,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    payload = payload or InventoryPushRequest()
    try:
        counts = await _orchestrator(db, services).push_inventory(payload.product_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PlatformError as exc:
        raise HTTPException(status_code=502, detail=exc.message)
    return {"updated": counts.updated, "skipped": counts.skipped, "errors": counts.errors, "messages": counts.messages}


@router.post("/export/products/{product_id}")
async def export_product(
    product_id: str,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        product = await _orchestrator(db, services).export_product(product_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PlatformError as exc:
        raise HTTPException(status_code=502, detail=exc.message)
    return {"product_id": product.id, "platform_id": product.platform_id, "sync_status": product.sync_status}


@router.post("/export/categories")
async def export_categories(
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    counts = await _orchestrator(db, services).export_categories()
    return {"created": counts.created, "updated": counts.updated, "errors": counts.errors, "messages": counts.messages}


@router.post("/orders/{order_id}/push-status")
async def push_order_status(
    order_id: str,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await _orchestrator(db, services).push_order_status(order_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PlatformError as exc:
        raise HTTPException(status_code=502, detail=exc.message)


@router.get("/status")
async def sync_status(
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    return await SyncOrchestrator(db, services.client).sync_status()


@router.get("/logs")
async def sync_logs(
    entity_type: Optional[str] = Query(None),
    direction: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    entries, total = SyncLedger(db).list_entries(
        entity_type=entity_type, direction=direction, outcome=outcome, limit=limit, offset=offset
    )
    return {"total": total, "items": [serialize_entry(entry) for entry in entries]}


@router.put("/settings")
async def update_settings(
    payload: ConnectorSettingsRequest,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    row = save_connector_settings(db, **payload.model_dump())
    credentials = services.client.reload_credentials()
    logger.info(f"[sync] Connector settings updated configured={credentials.is_complete()}")
    return {
        "base_url": row.base_url,
        "consumer_key": row.consumer_key,
        "has_consumer_secret": bool(row.consumer_secret),
        "has_webhook_secret": bool(row.webhook_secret),
        "sync_enabled": row.sync_enabled,
        "configured": credentials.is_complete(),
    }


@router.post("/settings/webhook-secret")
async def rotate_webhook_secret(
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    """Generate a new webhook secret. It is returned once so it can be pasted into the store."""
    secret = generate_webhook_secret()
    save_connector_settings(db, webhook_secret=secret)
    services.client.reload_credentials()
    return {"webhook_secret": secret}
