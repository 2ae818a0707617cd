"""Fake store API and record builders shared by the sync tests."""
import json
import math
from typing import Any, Dict, List, Optional, Tuple

import httpx

from storesync.services.platform_client import PlatformClient, PlatformCredentials


API_PREFIX = "/wp-json/wc/v3/"
WEBHOOK_SECRET = "whsec-test"


class FakePlatform:
    """In-memory stand-in for the store's REST API, served through httpx.MockTransport."""

    def __init__(self):
        self.collections: Dict[str, List[Dict[str, Any]]] = {
            "products/categories": [],
            "products/shipping_classes": [],
            "customers": [],
            "products": [],
            "orders": [],
        }
        self.requests: List[httpx.Request] = []
        # endpoint -> status codes returned (in order) before normal handling resumes
        self.failures: Dict[str, List[int]] = {}
        # (endpoint, page) -> status codes for one list page
        self.page_failures: Dict[Tuple[str, int], List[int]] = {}
        self.force_status: Optional[int] = None
        self.writes: List[Tuple[str, str, Any]] = []
        self._next_id = 9000

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add(self, endpoint: str, *records: Dict[str, Any]) -> None:
        self.collections[endpoint].extend(records)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        endpoint = request.url.path.split(API_PREFIX, 1)[1]

        if self.force_status is not None:
            return httpx.Response(self.force_status, json={"message": "forced"})
        queued = self.failures.get(endpoint)
        if queued:
            return httpx.Response(queued.pop(0), json={"message": "unavailable"})

        if request.method in ("POST", "PUT"):
            body = json.loads(request.content or b"{}")
            self.writes.append((request.method, endpoint, body))
            if request.method == "POST":
                self._next_id += 1
                return httpx.Response(201, json={**body, "id": self._next_id})
            return httpx.Response(200, json={**body, "id": endpoint.rsplit("/", 1)[-1]})

        if endpoint in self.collections:
            page = int(request.url.params.get("page", 1))
            queued = self.page_failures.get((endpoint, page))
            if queued:
                return httpx.Response(queued.pop(0), json={"message": "page failed"})
            per_page = int(request.url.params.get("per_page", 10))
            items = self.collections[endpoint]
            start = (page - 1) * per_page
            total_pages = math.ceil(len(items) / per_page) if items else 0
            return httpx.Response(
                200,
                json=items[start:start + per_page],
                headers={"X-WP-Total": str(len(items)), "X-WP-TotalPages": str(total_pages)},
            )

        base, _, ident = endpoint.rpartition("/")
        for record in self.collections.get(base, []):
            if str(record.get("id")) == ident:
                return httpx.Response(200, json=record)
        return httpx.Response(404, json={"code": "not_found", "message": "Invalid ID."})

    def list_pages_requested(self, endpoint: str) -> List[int]:
        """Page numbers fetched for ``endpoint``, ignoring the per_page=1 count requests."""
        pages = []
        for request in self.requests:
            if request.url.path.endswith(API_PREFIX + endpoint) and request.url.params.get("per_page") != "1":
                pages.append(int(request.url.params.get("page", 1)))
        return pages

    def paths_requested(self) -> List[str]:
        return [request.url.path.split(API_PREFIX, 1)[1] for request in self.requests]


def fake_credentials() -> PlatformCredentials:
    return PlatformCredentials(
        base_url="https://shop.example.test",
        consumer_key="ck_test_key",
        consumer_secret="cs_test_secret",
        webhook_secret=WEBHOOK_SECRET,
    )


def make_client(platform: FakePlatform, **kwargs: Any) -> PlatformClient:
    kwargs.setdefault("retry_delay_seconds", 0)
    return PlatformClient(fake_credentials, transport=platform.transport(), **kwargs)


def category_record(cid, name, slug=None, parent=0) -> Dict[str, Any]:
    return {"id": cid, "name": name, "slug": slug or name.lower(), "parent": parent, "description": ""}


def customer_record(cid, email, first_name="Ann", last_name="Buyer") -> Dict[str, Any]:
    return {
        "id": cid,
        "email": email,
        "first_name": first_name,
        "last_name": last_name,
        "billing": {"first_name": first_name, "last_name": last_name, "email": email, "city": "Rome"},
        "shipping": {},
    }


def product_record(pid, sku, name=None, price="19.90", categories=None) -> Dict[str, Any]:
    return {
        "id": pid,
        "sku": sku,
        "name": name or f"Product {sku}",
        "price": price,
        "regular_price": price,
        "status": "publish",
        "categories": categories or [],
        "shipping_class": "",
        "shipping_class_id": 0,
    }


def line_item(product_id, sku, *, quantity=2, price="19.90", name=None) -> Dict[str, Any]:
    return {
        "id": f"li_{product_id}",
        "product_id": product_id,
        "sku": sku,
        "name": name or f"Product {sku}",
        "quantity": quantity,
        "price": price,
        "subtotal": str(round(float(price) * quantity, 2)),
        "total": str(round(float(price) * quantity, 2)),
        "total_tax": "0.00",
    }


def order_record(oid, number, *, customer_id, email, line_items, status="processing") -> Dict[str, Any]:
    return {
        "id": oid,
        "number": str(number),
        "status": status,
        "currency": "EUR",
        "total": "39.80",
        "total_tax": "0.00",
        "shipping_total": "0.00",
        "discount_total": "0.00",
        "customer_id": customer_id,
        "billing": {"first_name": "Ann", "last_name": "Buyer", "email": email},
        "shipping": {},
        "date_paid": None,
        "customer_note": "",
        "line_items": line_items,
    }
