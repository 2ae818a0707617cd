import pytest

from storesync.models_sqlalchemy.models import Category, Customer, Order, OrderStatus, Product, SyncStatus
from storesync.models_sqlalchemy.sync_jobs import SyncLogEntry
from storesync.services.platform_client import PlatformError
from storesync.services.sync_orchestrator import ImportOptions, ImportStage, SyncOrchestrator

from fakes import category_record, customer_record, line_item, order_record, product_record


def _order_scenario(platform):
    """One remote order whose customer, product and category are all unknown locally."""
    platform.add("customers", customer_record("ext_cust_1", "a@b.com"))
    platform.add("products/categories", category_record("ext_cat_3", "Widgets"))
    platform.add(
        "products",
        product_record(
            "ext_prod_9",
            "SKU-9",
            name="Blue widget",
            categories=[{"id": "ext_cat_3", "name": "Widgets", "slug": "widgets"}],
        ),
    )
    platform.add(
        "orders",
        order_record(
            "ext_order_77",
            1077,
            customer_id="ext_cust_1",
            email="a@b.com",
            line_items=[line_item("ext_prod_9", "SKU-9", name="Blue widget")],
        ),
    )


@pytest.mark.asyncio
async def test_order_import_creates_missing_references(db, client, platform):
    _order_scenario(platform)
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    result = await orchestrator.run_full_import(ImportOptions(stages=[ImportStage.ORDERS]))

    assert result.success
    assert result.stages["orders"].imported == 1
    order = db.query(Order).one()
    customer = db.query(Customer).one()
    product = db.query(Product).one()
    category = db.query(Category).one()
    assert order.order_number == "WP-1077"
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.customer_id == customer.id
    assert customer.platform_id == "ext_cust_1"
    assert customer.email == "a@b.com"
    assert product.sku == "SKU-9"
    assert product.platform_id == "ext_prod_9"
    assert product.category_id == category.id
    assert category.platform_id == "ext_cat_3"
    assert category.name == "Widgets"
    assert [item.product_id for item in order.items] == [product.id]
    assert order.items[0].quantity == 2

    entries = db.query(SyncLogEntry).order_by(SyncLogEntry.id).all()
    assert [(e.entity_type, e.action, e.outcome) for e in entries] == [
        ("customer", "CREATE", "SUCCESS"),
        ("category", "CREATE", "SUCCESS"),
        ("product", "CREATE", "SUCCESS"),
        ("order", "IMPORT", "SUCCESS"),
    ]


@pytest.mark.asyncio
async def test_full_import_runs_stages_in_dependency_order(db, client, platform):
    _order_scenario(platform)
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    result = await orchestrator.run_full_import()

    list_calls = [path for path in platform.paths_requested() if path in platform.collections]
    assert list_calls == ["products/categories", "products/shipping_classes", "customers", "products", "orders"]
    assert result.stages["categories"].imported == 1
    assert result.stages["customers"].imported == 1
    assert result.stages["products"].imported == 1
    assert result.stages["orders"].imported == 1
    # Everything was already local when orders ran: no single-record fetches.
    assert all(path in platform.collections for path in platform.paths_requested())
    assert "auto_created" not in result.to_dict()


@pytest.mark.asyncio
async def test_reimport_updates_instead_of_duplicating(db, client, platform):
    _order_scenario(platform)
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    await orchestrator.run_full_import()
    platform.collections["orders"][0]["status"] = "completed"
    platform.collections["orders"][0]["date_paid"] = "2026-10-01T10:00:00"
    second = await orchestrator.run_full_import()

    assert second.totals()["imported"] == 0
    assert second.totals()["updated"] == 4
    assert db.query(Order).count() == 1
    assert db.query(Customer).count() == 1
    order = db.query(Order).one()
    assert order.status == OrderStatus.DELIVERED.value
    assert order.payment_status == "paid"


@pytest.mark.asyncio
async def test_failing_record_is_counted_and_import_continues(db, client, platform):
    platform.add(
        "products",
        product_record(1, "SKU-1"),
        {"id": 2, "sku": "SKU-2", "name": "", "status": "publish"},
        product_record(3, "SKU-3"),
    )
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    result = await orchestrator.run_full_import(ImportOptions(stages=[ImportStage.PRODUCTS]))

    counts = result.stages["products"]
    assert counts.imported == 2
    assert counts.errors == 1
    assert "product 2" in counts.messages[0]
    assert db.query(Product).count() == 2
    failed = db.query(SyncLogEntry).filter(SyncLogEntry.outcome == "FAILED").one()
    assert failed.entity_id == "2"


@pytest.mark.asyncio
async def test_failing_stage_skips_later_stages(db, client, platform):
    _order_scenario(platform)
    platform.failures["customers"] = [500]
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    result = await orchestrator.run_full_import()

    assert result.success is False
    assert result.failed_stage == "customers"
    assert result.skipped_stages == ["products", "orders"]
    assert result.stages["categories"].imported == 1
    assert "customers" not in result.stages
    assert "orders" not in platform.paths_requested()


@pytest.mark.asyncio
async def test_smart_import_reports_auto_created_entities(db, client, platform):
    _order_scenario(platform)
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    result = await orchestrator.run_smart_import(ImportOptions(stages=[ImportStage.ORDERS]))

    assert result.to_dict()["auto_created"] == {"customer": 1, "category": 1, "product": 1}


@pytest.mark.asyncio
async def test_pages_are_throttled(db, client, platform):
    platform.add("customers", *[customer_record(f"c{i}", f"c{i}@example.com") for i in range(12)])
    delays = []

    async def sleep(delay):
        delays.append(delay)

    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=2.0, sleep=sleep)

    result = await orchestrator.run_full_import(ImportOptions(stages=["customers"], per_page=5))

    assert result.stages["customers"].pages == 3
    assert result.stages["customers"].imported == 12
    assert delays == [2.0, 2.0]


@pytest.mark.asyncio
async def test_export_product_creates_then_updates(db, client, platform):
    category = Category(id="cat-1", name="Widgets", slug="widgets", platform_id="33")
    product = Product(id="prod-1", sku="LOCAL-1", name="Local widget", price=12, web_active=True, category_id="cat-1")
    db.add_all([category, product])
    db.commit()
    orchestrator = SyncOrchestrator(db, client)

    exported = await orchestrator.export_product("prod-1")
    await orchestrator.export_product("prod-1")

    method, endpoint, body = platform.writes[0]
    assert (method, endpoint) == ("POST", "products")
    assert body["sku"] == "LOCAL-1"
    assert body["categories"] == [{"id": 33}]
    assert platform.writes[1][:2] == ("PUT", f"products/{exported.platform_id}")
    assert exported.sync_status == SyncStatus.SYNCED.value
    assert db.query(SyncLogEntry).filter(SyncLogEntry.action == "EXPORT").count() == 2


@pytest.mark.asyncio
async def test_export_products_pages_through_web_active_products(db, client, platform):
    db.add_all(
        [
            Product(id="p-a", sku="A-1", name="Alpha", price=10, web_active=True),
            Product(id="p-b", sku="B-2", name="Bravo", price=11, web_active=True, platform_id="501"),
            Product(id="p-c", sku="C-3", name="Charlie", price=12, web_active=True),
            Product(id="p-d", sku="D-4", name="Delta", price=13, web_active=False),
        ]
    )
    db.commit()
    platform.failures["products"] = [400]
    delays = []

    async def record_delay(seconds):
        delays.append(seconds)

    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=1.0, sleep=record_delay)

    result = await orchestrator.export_products(per_page=2)

    products = result["products"]
    assert (products["created"], products["updated"], products["errors"]) == (1, 1, 1)
    assert products["messages"][0].startswith("A-1:")
    assert result["inventory"] is None
    assert [(method, endpoint) for method, endpoint, _ in platform.writes] == [
        ("PUT", "products/501"),
        ("POST", "products"),
    ]
    assert delays == [1.0]
    exports = db.query(SyncLogEntry).filter(SyncLogEntry.action == "EXPORT").all()
    assert sorted((e.entity_id, e.outcome) for e in exports) == [
        ("p-a", "FAILED"),
        ("p-b", "SUCCESS"),
        ("p-c", "SUCCESS"),
    ]
    assert db.query(Product).filter(Product.id == "p-a").one().sync_status == SyncStatus.ERROR.value


@pytest.mark.asyncio
async def test_export_selected_products_with_inventory(db, client, platform):
    db.add_all(
        [
            Product(id="p-a", sku="A-1", name="Alpha", price=10, stock_quantity=4),
            Product(id="p-b", sku="B-2", name="Bravo", price=11, web_active=True),
        ]
    )
    db.commit()
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)

    result = await orchestrator.export_products(["p-a"], include_inventory=True)

    assert result["products"]["created"] == 1
    assert result["inventory"]["updated"] == 1
    remote_id = db.query(Product).filter(Product.id == "p-a").one().platform_id
    assert platform.writes[-1][:2] == ("PUT", f"products/{remote_id}")
    assert platform.writes[-1][2]["stock_quantity"] == 4


@pytest.mark.asyncio
async def test_push_inventory_sends_stock_for_linked_products(db, client, platform):
    db.add_all(
        [
            Product(id="p-1", sku="S-1", name="In stock", price=1, platform_id="700", stock_quantity=5),
            Product(id="p-2", sku="S-2", name="Sold out", price=1, platform_id="701", stock_quantity=0),
            Product(id="p-3", sku="S-3", name="Local only", price=1, stock_quantity=3),
            Product(id="p-4", sku="S-4", name="Untracked", price=1, platform_id="702"),
        ]
    )
    db.commit()
    orchestrator = SyncOrchestrator(db, client)

    counts = await orchestrator.push_inventory()

    assert (counts.updated, counts.skipped, counts.errors) == (2, 1, 0)
    assert platform.writes == [
        ("PUT", "products/700", {"manage_stock": True, "stock_quantity": 5, "stock_status": "instock"}),
        ("PUT", "products/701", {"manage_stock": True, "stock_quantity": 0, "stock_status": "outofstock"}),
    ]
    updates = db.query(SyncLogEntry).filter(SyncLogEntry.action == "UPDATE").all()
    assert sorted(e.entity_id for e in updates) == ["p-1", "p-2"]


@pytest.mark.asyncio
async def test_push_inventory_for_one_product(db, client, platform):
    db.add_all(
        [
            Product(id="p-1", sku="S-1", name="Linked", price=1, platform_id="700", stock_quantity=5),
            Product(id="p-3", sku="S-3", name="Local only", price=1, stock_quantity=3),
        ]
    )
    db.commit()
    platform.failures["products/700"] = [400]
    orchestrator = SyncOrchestrator(db, client)

    with pytest.raises(ValueError):
        await orchestrator.push_inventory("p-3")
    with pytest.raises(LookupError):
        await orchestrator.push_inventory("missing")
    with pytest.raises(PlatformError):
        await orchestrator.push_inventory("p-1")

    entry = db.query(SyncLogEntry).one()
    assert (entry.entity_id, entry.action, entry.outcome) == ("p-1", "UPDATE", "FAILED")

    counts = await orchestrator.push_inventory("p-1")
    assert counts.updated == 1


@pytest.mark.asyncio
async def test_export_categories_sends_parents_first(db, client, platform):
    db.add_all(
        [
            Category(id="child", name="Child", slug="child", parent_id="parent"),
            Category(id="parent", name="Parent", slug="parent"),
        ]
    )
    db.commit()
    orchestrator = SyncOrchestrator(db, client)

    counts = await orchestrator.export_categories()

    assert counts.created == 2
    assert [body["slug"] for _, _, body in platform.writes] == ["parent", "child"]
    parent = db.query(Category).filter(Category.id == "parent").one()
    assert platform.writes[1][2]["parent"] == int(parent.platform_id)


@pytest.mark.asyncio
async def test_push_order_status_maps_internal_status(db, client, platform):
    _order_scenario(platform)
    orchestrator = SyncOrchestrator(db, client, page_delay_seconds=0)
    await orchestrator.run_full_import(ImportOptions(stages=[ImportStage.ORDERS]))
    order = db.query(Order).one()
    order.status = OrderStatus.SHIPPED.value
    db.commit()

    result = await orchestrator.push_order_status(order.id)

    assert result["status"] == "completed"
    assert platform.writes[-1] == ("PUT", "orders/ext_order_77", {"status": "completed"})
    entry = db.query(SyncLogEntry).filter(SyncLogEntry.action == "UPDATE").one()
    assert entry.outcome == "SUCCESS"
    assert entry.entity_id == order.id
