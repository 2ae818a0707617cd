from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from storesync.models_sqlalchemy import get_db
from storesync.services.container import ConnectorServices, get_services
from storesync.services.webhook_ingestion import (
    SIGNATURE_HEADER,
    TOPIC_HEADER,
    WebhookIngestion,
    WebhookRejected,
)
from storesync.utils.logger import logger


router = APIRouter(prefix="/webhooks/platform", tags=["platform_webhooks"])


@router.post("/orders")
async def platform_order_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: ConnectorServices = Depends(get_services),
) -> Dict[str, Any]:
    """Order created/updated notifications pushed by the remote store.

    The signature is checked against the raw body before it is parsed, so the
    body must not be re-serialized on the way in.
    """
    raw_body = await request.body()
    ingestion = WebhookIngestion(db, services.client)
    try:
        ack = await ingestion.handle(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            topic=request.headers.get(TOPIC_HEADER),
        )
    except WebhookRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    except Exception as exc:
        logger.error(f"[webhook] Processing failed: {exc}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return ack.to_dict()
