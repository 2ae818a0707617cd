import json

import pytest

from storesync.models_sqlalchemy.models import Category, Customer, Order, OrderStatus, Product
from storesync.models_sqlalchemy.sync_jobs import SyncLogEntry
from storesync.services.webhook_ingestion import (
    WebhookIngestion,
    WebhookRejected,
    compute_signature,
    verify_signature,
)

from fakes import WEBHOOK_SECRET, category_record, customer_record, line_item, order_record, product_record


def _store_with_order(platform):
    platform.add("customers", customer_record("ext_cust_1", "a@b.com"))
    platform.add("products/categories", category_record("ext_cat_3", "Widgets"))
    platform.add(
        "products",
        product_record("ext_prod_9", "SKU-9", categories=[{"id": "ext_cat_3", "name": "Widgets", "slug": "widgets"}]),
    )
    return order_record(
        "ext_order_77",
        1077,
        customer_id="ext_cust_1",
        email="a@b.com",
        line_items=[line_item("ext_prod_9", "SKU-9")],
    )


def _body(payload):
    return json.dumps(payload).encode("utf-8")


def test_signature_helpers():
    body = b'{"id": 1}'
    signature = compute_signature(body, "secret")

    assert verify_signature(body, signature, "secret") == (True, None)
    assert verify_signature(body, signature, "other") == (False, "signature mismatch")
    assert verify_signature(body, None, "secret") == (False, "missing signature")
    assert verify_signature(body + b" ", signature, "secret")[0] is False
    # no secret configured: verification is skipped
    assert verify_signature(body, None, None) == (True, None)


@pytest.mark.asyncio
async def test_bad_signature_changes_nothing(db, client, platform):
    body = _body(_store_with_order(platform))
    ingestion = WebhookIngestion(db, client)

    with pytest.raises(WebhookRejected) as excinfo:
        await ingestion.handle(body, compute_signature(body, "wrong-secret"), topic="order.created")

    assert excinfo.value.status_code == 401
    assert db.query(Order).count() == 0
    assert db.query(Customer).count() == 0
    assert db.query(SyncLogEntry).count() == 0
    assert platform.requests == []


@pytest.mark.asyncio
async def test_signed_delivery_imports_order_with_dependencies(db, client, platform):
    body = _body(_store_with_order(platform))
    ingestion = WebhookIngestion(db, client)

    ack = await ingestion.handle(body, compute_signature(body, WEBHOOK_SECRET), topic="order.created")

    order = db.query(Order).one()
    assert ack.status == "processed"
    assert ack.outcome == "imported"
    assert ack.order_id == order.id
    assert order.order_number == "WP-1077"
    assert db.query(Customer).count() == 1
    assert db.query(Product).count() == 1
    assert db.query(Category).count() == 1


@pytest.mark.asyncio
async def test_redelivery_updates_status_without_duplicates(db, client, platform):
    payload = _store_with_order(platform)
    ingestion = WebhookIngestion(db, client)
    body = _body(payload)
    await ingestion.handle(body, compute_signature(body, WEBHOOK_SECRET), topic="order.created")

    payload["status"] = "cancelled"
    body = _body(payload)
    ack = await ingestion.handle(body, compute_signature(body, WEBHOOK_SECRET), topic="order.updated")

    assert ack.outcome == "updated"
    order = db.query(Order).one()
    assert ack.order_id == order.id
    assert ack.message == "Order WP-1077 updated"
    assert order.status == OrderStatus.CANCELLED.value
    assert order.platform_status == "cancelled"
    assert len(order.items) == 1


@pytest.mark.asyncio
async def test_sentinel_deliveries_are_acknowledged_and_ignored(db, client):
    ingestion = WebhookIngestion(db, client)
    ping = _body({"webhook_id": 42})

    ack = await ingestion.handle(ping, compute_signature(ping, WEBHOOK_SECRET), topic="order.created")

    assert ack.status == "ignored"
    assert db.query(SyncLogEntry).count() == 0


@pytest.mark.asyncio
async def test_malformed_payloads_are_rejected(db, client):
    ingestion = WebhookIngestion(db, client)

    not_json = b"{not json"
    with pytest.raises(WebhookRejected) as excinfo:
        await ingestion.handle(not_json, compute_signature(not_json, WEBHOOK_SECRET))
    assert excinfo.value.status_code == 400

    no_id = _body({"status": "processing"})
    with pytest.raises(WebhookRejected) as excinfo:
        await ingestion.handle(no_id, compute_signature(no_id, WEBHOOK_SECRET))
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_unsigned_delivery_accepted_when_no_secret_configured(db, client, platform):
    body = _body(_store_with_order(platform))
    ingestion = WebhookIngestion(db, client, secret_provider=lambda: None)

    ack = await ingestion.handle(body, None)

    assert ack.status == "processed"
    assert db.query(Order).count() == 1
