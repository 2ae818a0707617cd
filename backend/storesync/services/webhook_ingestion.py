from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from storesync.services.entity_resolver import EntityResolver
from storesync.services.entity_store import find_order
from storesync.services.platform_client import PlatformClient
from storesync.services.platform_mapping import map_order, normalize_platform_id
from storesync.services.record_import import RecordImporter
from storesync.services.sync_ledger import SyncLedger
from storesync.utils.logger import logger


SIGNATURE_HEADER = "X-Signature"
TOPIC_HEADER = "X-Topic"

# Topics the store fires for internal housekeeping; they carry no order data.
SENTINEL_TOPICS = {
    "action.woocommerce_scheduled_subscription_trial_end",
}


class WebhookRejected(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass
class WebhookAck:
    status: str  # "processed" or "ignored"
    message: str
    order_id: Optional[str] = None
    outcome: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "order_id": self.order_id, "outcome": self.outcome}


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Check ``signature`` against base64(HMAC-SHA256(raw_body, secret)).

    Returns ``(ok, reason)``. With no secret configured every payload passes;
    that mode is for local development only.
    """
    if not secret:
        logger.warning("[webhook] No webhook secret configured; skipping signature verification")
        return True, None
    if not signature:
        return False, "missing signature"
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", errors="replace")):
        return False, "signature mismatch"
    return True, None


def is_sentinel(topic: Optional[str], payload: Any) -> bool:
    if topic and topic in SENTINEL_TOPICS:
        return True
    # The store sends {"webhook_id": N} once when a webhook is created.
    if isinstance(payload, dict) and set(payload.keys()) == {"webhook_id"}:
        return True
    return False


class WebhookIngestion:
    """Verify inbound order notifications and apply them via the bulk import path."""

    def __init__(
        self,
        db: Session,
        client: PlatformClient,
        *,
        secret_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.db = db
        self.client = client
        self._secret_provider = secret_provider or (lambda: client.webhook_secret)

    async def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        *,
        topic: Optional[str] = None,
    ) -> WebhookAck:
        ok, reason = verify_signature(raw_body, signature_header, self._secret_provider())
        if not ok:
            logger.warning(f"[webhook] Rejected delivery topic={topic}: {reason}")
            raise WebhookRejected(401, f"Invalid webhook signature: {reason}")

        try:
            payload = json.loads(raw_body) if raw_body else {}
        except json.JSONDecodeError as exc:
            raise WebhookRejected(400, f"Invalid JSON body: {exc}")

        if is_sentinel(topic, payload):
            logger.info(f"[webhook] Ignoring sentinel delivery topic={topic}")
            return WebhookAck(status="ignored", message="test or sentinel delivery")

        if not isinstance(payload, dict) or not payload.get("id"):
            raise WebhookRejected(400, "Order payload has no id")

        ledger = SyncLedger(self.db)
        importer = RecordImporter(self.db, EntityResolver(self.db, self.client, ledger), ledger)
        try:
            outcome = await importer.import_order(payload)
        except Exception:
            self.db.rollback()
            raise

        order_number = map_order(payload)["order_number"]
        order = find_order(self.db, platform_id=normalize_platform_id(payload.get("id")), order_number=order_number)
        logger.info(f"[webhook] Order {order_number} {outcome.value} topic={topic}")
        return WebhookAck(
            status="processed",
            message=f"Order {order_number} {outcome.value}",
            order_id=order.id if order else None,
            outcome=outcome.value,
        )
