import json

import pytest
from fastapi.testclient import TestClient

from storesync.main import app
from storesync.models_sqlalchemy import get_db
from storesync.models_sqlalchemy.models import Order, Product
from storesync.models_sqlalchemy.sync_jobs import JobKind, JobStatus, SyncLogEntry
from storesync.services.connector_settings import credentials_loader
from storesync.services.container import ConnectorServices, get_services
from storesync.services.platform_client import PlatformClient
from storesync.services.sync_workers import JobController
from storesync.services.sync_workers import jobs
from storesync.services.webhook_ingestion import compute_signature

from fakes import WEBHOOK_SECRET, category_record, customer_record, line_item, order_record, product_record


@pytest.fixture
def api(session_factory, client):
    """TestClient wired to the in-memory database and the fake store."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    services = ConnectorServices(client=client, jobs=JobController(session_factory, client))
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_services, None)


def test_healthz(api):
    assert api.get("/healthz").json() == {"status": "ok"}


def test_start_job_with_rejected_credentials_reports_failure(api, platform):
    platform.force_status = 403

    resp = api.post("/sync/jobs/start", json={"kind": "ORDERS", "created_by": "ops"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["created"] is True
    assert body["job"]["status"] == "FAILED"
    assert body["job"]["created_by"] == "ops"


def test_start_returns_existing_active_job(api, db):
    paused = jobs.create_job(db, JobKind.CUSTOMERS)
    jobs.set_job_status(db, paused, JobStatus.PAUSED)

    resp = api.post("/sync/jobs/start", json={"kind": "CUSTOMERS"})

    assert resp.status_code == 200
    assert resp.json()["created"] is False
    assert resp.json()["job_id"] == paused.id


def test_job_status_and_transitions(api, db):
    paused = jobs.create_job(db, JobKind.PRODUCTS)
    jobs.set_job_status(db, paused, JobStatus.PAUSED)
    job_id = paused.id

    resp = api.get(f"/sync/jobs/{job_id}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "PAUSED"
    assert resp.json()["progress"]["current_page"] == 1

    assert api.get("/sync/jobs/does-not-exist").status_code == 404
    assert api.post(f"/sync/jobs/{job_id}/pause").status_code == 409

    resp = api.post(f"/sync/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"
    assert api.post(f"/sync/jobs/{job_id}/resume", json={}).status_code == 409

    listing = api.get("/sync/jobs", params={"status": "CANCELLED"}).json()
    assert listing["total"] == 1
    assert listing["items"][0]["id"] == job_id

    stats = api.get("/sync/jobs/stats").json()
    assert stats["by_status"]["CANCELLED"] == 1


def test_resumable_jobs_listed(api, db):
    failed = jobs.create_job(db, JobKind.ORDERS)
    jobs.set_job_status(db, failed, JobStatus.FAILED, failure_reason="boom")

    resp = api.get("/sync/jobs/resumable", params={"kind": "ORDERS"})

    assert resp.status_code == 200
    assert [job["id"] for job in resp.json()] == [failed.id]
    assert resp.json()[0]["failure_reason"] == "boom"


def test_webhook_rejects_bad_signature(api, db):
    body = json.dumps({"id": "ext_order_77", "number": "1077", "status": "processing"}).encode("utf-8")

    resp = api.post(
        "/webhooks/platform/orders",
        content=body,
        headers={"X-Signature": "not-a-signature", "X-Topic": "order.created"},
    )

    assert resp.status_code == 401
    assert db.query(Order).count() == 0
    assert db.query(SyncLogEntry).count() == 0


def test_webhook_processes_signed_order(api, platform, db):
    platform.add("customers", customer_record("ext_cust_1", "a@b.com"))
    platform.add("products/categories", category_record("ext_cat_3", "Widgets"))
    platform.add(
        "products",
        product_record("ext_prod_9", "SKU-9", categories=[{"id": "ext_cat_3", "name": "Widgets", "slug": "widgets"}]),
    )
    payload = order_record(
        "ext_order_77", 1077, customer_id="ext_cust_1", email="a@b.com", line_items=[line_item("ext_prod_9", "SKU-9")]
    )
    body = json.dumps(payload).encode("utf-8")

    resp = api.post(
        "/webhooks/platform/orders",
        content=body,
        headers={"X-Signature": compute_signature(body, WEBHOOK_SECRET), "X-Topic": "order.created"},
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "processed"
    assert resp.json()["outcome"] == "imported"
    assert db.query(Order).count() == 1
    logs = api.get("/sync/logs", params={"entity_type": "order"}).json()
    assert logs["total"] == 1
    assert logs["items"][0]["action"] == "IMPORT"


def test_webhook_acknowledges_ping(api):
    body = b'{"webhook_id": 7}'

    resp = api.post(
        "/webhooks/platform/orders",
        content=body,
        headers={"X-Signature": compute_signature(body, WEBHOOK_SECRET)},
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"


def test_bulk_export_and_inventory_routes(api, platform, db):
    db.add(Product(id="p-1", sku="WEB-1", name="Web widget", price=5, web_active=True, stock_quantity=7))
    db.commit()

    resp = api.post("/sync/export/products", json={"include_inventory": True})

    assert resp.status_code == 200
    assert resp.json()["products"]["created"] == 1
    assert resp.json()["inventory"]["updated"] == 1

    resp = api.post("/sync/export/inventory", json={"product_id": "p-1"})
    assert resp.status_code == 200
    assert resp.json()["updated"] == 1
    assert platform.writes[-1][2]["stock_status"] == "instock"
    assert api.post("/sync/export/inventory", json={"product_id": "missing"}).status_code == 404


def test_saving_settings_reconfigures_client(session_factory, platform):
    client = PlatformClient(credentials_loader(session_factory), transport=platform.transport(), retry_delay_seconds=0)
    services = ConnectorServices(client=client, jobs=JobController(session_factory, client))

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services
    try:
        api = TestClient(app)
        if client.is_configured():
            pytest.skip("PLATFORM_* environment variables are set")
        assert api.post("/sync/import/full").status_code == 400

        resp = api.put(
            "/sync/settings",
            json={
                "base_url": "https://shop.example.test",
                "consumer_key": "ck_saved",
                "consumer_secret": "cs_saved",
            },
        )
        assert resp.status_code == 200
        assert resp.json()["configured"] is True
        assert resp.json()["has_consumer_secret"] is True
        assert client.credentials.consumer_key == "ck_saved"

        rotated = api.post("/sync/settings/webhook-secret").json()["webhook_secret"]
        assert client.webhook_secret == rotated

        status = api.get("/sync/status").json()
        assert status["configured"] is True
        assert status["products"] == {"total": 0, "synced": 0, "pending": 0}
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_services, None)
