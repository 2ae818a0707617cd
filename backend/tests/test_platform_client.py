import asyncio
import base64

import httpx
import pytest

from storesync.services.platform_client import (
    PlatformAuthError,
    PlatformClient,
    PlatformCredentials,
    PlatformError,
    PlatformNotConfiguredError,
    PlatformTransferError,
)

from fakes import customer_record, fake_credentials, make_client


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_retries_transient_errors_then_succeeds(platform):
    """Three 503 responses followed by a 200 yield the 200 payload after three retries."""

    platform.add("customers", customer_record("ext_cust_1", "a@b.com"))
    platform.failures["customers/ext_cust_1"] = [503, 503, 503]
    sleep = RecordingSleep()
    client = make_client(platform, max_retries=3, retry_delay_seconds=1.0, sleep=sleep)

    payload = await client.get("customers/ext_cust_1")

    assert payload["email"] == "a@b.com"
    assert client.retry_count == 3
    assert len(platform.requests) == 4
    # exponential backoff: delay * 2**attempt
    assert sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(platform):
    platform.failures["orders"] = [502, 503, 504, 503]
    client = make_client(platform, max_retries=3)

    with pytest.raises(PlatformTransferError) as excinfo:
        await client.get("orders")

    assert "after 3 retries" in excinfo.value.message
    assert excinfo.value.status_code == 503
    assert len(platform.requests) == 4


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried(platform):
    platform.force_status = 401
    client = make_client(platform, max_retries=3)

    with pytest.raises(PlatformAuthError):
        await client.get("products")

    assert len(platform.requests) == 1
    assert client.retry_count == 0


@pytest.mark.asyncio
async def test_other_client_errors_raise_platform_error(client, platform):
    with pytest.raises(PlatformError) as excinfo:
        await client.get("products/404404")

    assert not isinstance(excinfo.value, PlatformAuthError)
    assert excinfo.value.status_code == 404
    assert "Invalid ID" in excinfo.value.message
    assert len(platform.requests) == 1


@pytest.mark.asyncio
async def test_timeout_counts_as_transient_failure():
    async def slow_handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json=[])

    client = PlatformClient(
        fake_credentials,
        transport=httpx.MockTransport(slow_handler),
        timeout_seconds=0.05,
        max_retries=1,
        retry_delay_seconds=0,
    )

    with pytest.raises(PlatformTransferError) as excinfo:
        await client.get("orders")

    assert "timeout" in excinfo.value.message
    assert client.retry_count == 1


@pytest.mark.asyncio
async def test_network_error_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"environment": {"version": "8.0"}})

    client = PlatformClient(fake_credentials, transport=httpx.MockTransport(handler), retry_delay_seconds=0)

    assert await client.check_connection() is True
    assert len(calls) == 2
    assert client.retry_count == 1


@pytest.mark.asyncio
async def test_requests_carry_basic_auth_and_api_prefix(client, platform):
    await client.get("products")

    request = platform.requests[0]
    expected = base64.b64encode(b"ck_test_key:cs_test_secret").decode("ascii")
    assert request.headers["Authorization"] == f"Basic {expected}"
    assert str(request.url).startswith("https://shop.example.test/wp-json/wc/v3/products")


@pytest.mark.asyncio
async def test_unconfigured_client_never_sends():
    sent = []
    client = PlatformClient(
        lambda: PlatformCredentials(base_url="https://shop.example.test"),
        transport=httpx.MockTransport(lambda request: sent.append(request) or httpx.Response(200, json=[])),
    )

    with pytest.raises(PlatformNotConfiguredError):
        await client.get("orders")

    assert client.is_configured() is False
    assert await client.check_connection() is False
    assert sent == []


@pytest.mark.asyncio
async def test_iter_pages_stops_on_short_page(client, platform):
    platform.add("customers", *[customer_record(f"c{i}", f"c{i}@example.com") for i in range(25)])

    pages = [page async for page in client.iter_pages("customers", 10)]

    assert [len(page.items) for page in pages] == [10, 10, 5]
    assert pages[0].total_items == 25
    assert pages[0].total_pages == 3
    assert pages[-1].has_more is False
    assert platform.list_pages_requested("customers") == [1, 2, 3]


@pytest.mark.asyncio
async def test_iter_pages_uses_total_pages_when_last_page_is_full(client, platform):
    platform.add("customers", *[customer_record(f"c{i}", f"c{i}@example.com") for i in range(20)])

    pages = [page async for page in client.iter_pages("customers", 10)]

    assert len(pages) == 2
    # no trailing request for an empty page 3
    assert platform.list_pages_requested("customers") == [1, 2]


@pytest.mark.asyncio
async def test_count_reads_total_header(client, platform):
    platform.add("customers", *[customer_record(f"c{i}", f"c{i}@example.com") for i in range(7)])

    assert await client.count("customers") == 7
    assert platform.requests[0].url.params["per_page"] == "1"


@pytest.mark.asyncio
async def test_reload_credentials_picks_up_new_values():
    current = {"key": "ck_old"}
    seen = []

    def handler(request):
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json=[])

    client = PlatformClient(
        lambda: PlatformCredentials(
            base_url="https://shop.example.test",
            consumer_key=current["key"],
            consumer_secret="cs",
        ),
        transport=httpx.MockTransport(handler),
    )

    await client.get("orders")
    current["key"] = "ck_new"
    await client.get("orders")
    assert seen[0] == seen[1]

    client.reload_credentials()
    await client.get("orders")
    assert seen[2] != seen[1]
    assert base64.b64decode(seen[2].split(" ", 1)[1]).startswith(b"ck_new:")
