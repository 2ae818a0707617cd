"""HTTP client for the remote store's REST API.

The client owns the transport policy for every call the connector makes:

- HTTP Basic auth built from the stored consumer key/secret;
- a per-call timeout enforced by cancelling the request;
- retries with exponential backoff on 502/503/504, timeouts and transient
  network failures;
- page helpers that read ``X-WP-Total`` / ``X-WP-TotalPages``.

Credentials are read lazily through a loader callable and cached until
:meth:`PlatformClient.reload_credentials` is called, so saving new connector
settings takes effect without restarting the process.
"""
from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from storesync.config import settings
from storesync.utils.logger import logger


RETRYABLE_STATUS_CODES = {502, 503, 504}


class PlatformError(Exception):
    """Base class for failures talking to the remote store."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.endpoint = endpoint


class PlatformAuthError(PlatformError):
    """Credentials are missing or were rejected (401/403)."""


class PlatformNotConfiguredError(PlatformAuthError):
    """No base URL or consumer credentials are configured."""


class PlatformTransferError(PlatformError):
    """The call kept failing with transient errors until retries ran out."""


@dataclass
class PlatformCredentials:
    base_url: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    webhook_secret: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.base_url and self.consumer_key and self.consumer_secret)


@dataclass
class PlatformPage:
    """One page of a paginated list endpoint."""

    items: List[Dict[str, Any]]
    page: int
    per_page: int
    total_items: Optional[int] = None
    total_pages: Optional[int] = None

    @property
    def has_more(self) -> bool:
        if not self.items or len(self.items) < self.per_page:
            return False
        if self.total_pages is not None:
            return self.page < self.total_pages
        return True


@dataclass
class PlatformResponse:
    status_code: int
    payload: Any
    headers: Dict[str, str] = field(default_factory=dict)


def credentials_from_settings() -> PlatformCredentials:
    return PlatformCredentials(
        base_url=settings.PLATFORM_BASE_URL,
        consumer_key=settings.PLATFORM_CONSUMER_KEY,
        consumer_secret=settings.PLATFORM_CONSUMER_SECRET,
        webhook_secret=settings.PLATFORM_WEBHOOK_SECRET,
    )


def _int_header(headers: Dict[str, str], name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class PlatformClient:
    def __init__(
        self,
        credentials_loader: Callable[[], PlatformCredentials] = credentials_from_settings,
        *,
        api_prefix: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._credentials_loader = credentials_loader
        self._credentials: Optional[PlatformCredentials] = None
        self.api_prefix = (api_prefix if api_prefix is not None else settings.PLATFORM_API_PREFIX).rstrip("/")
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.PLATFORM_REQUEST_TIMEOUT_SECONDS
        )
        self.max_retries = max_retries if max_retries is not None else settings.PLATFORM_MAX_RETRIES
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None else settings.PLATFORM_RETRY_DELAY_SECONDS
        )
        self._transport = transport
        self._sleep = sleep
        # Total retries performed by this client since it was created.
        self.retry_count = 0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @property
    def credentials(self) -> PlatformCredentials:
        if self._credentials is None:
            self._credentials = self._credentials_loader()
        return self._credentials

    def reload_credentials(self) -> PlatformCredentials:
        self._credentials = self._credentials_loader()
        logger.info(
            "[platform] Credentials reloaded configured=%s base_url=%s",
            self._credentials.is_complete(),
            self._credentials.base_url,
        )
        return self._credentials

    def is_configured(self) -> bool:
        return self.credentials.is_complete()

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.credentials.webhook_secret

    def _auth_header(self) -> str:
        creds = self.credentials
        token = base64.b64encode(f"{creds.consumer_key}:{creds.consumer_secret}".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def build_url(self, endpoint: str) -> str:
        base = (self.credentials.base_url or "").rstrip("/")
        return f"{base}{self.api_prefix}/{endpoint.lstrip('/')}"

    # ------------------------------------------------------------------
    # Core request with retry/backoff
    # ------------------------------------------------------------------

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        body: Optional[Any],
        params: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        # Timeout is enforced with asyncio.wait_for in send(); httpx's own
        # timeout is disabled so the two don't race.
        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            return await client.request(method, url, json=body, params=params, headers=headers)

    async def send(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Any] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> PlatformResponse:
        """Perform one logical call, retrying transient failures.

        Returns the decoded payload with response headers. Raises
        :class:`PlatformAuthError` on missing/rejected credentials,
        :class:`PlatformTransferError` once retries are exhausted and
        :class:`PlatformError` for any other non-2xx response.
        """
        if not self.is_configured():
            raise PlatformNotConfiguredError("Remote store connection is not configured", endpoint=endpoint)

        url = self.build_url(endpoint)
        call_timeout = timeout if timeout is not None else self.timeout_seconds
        attempt = 0
        last_error = ""

        while True:
            try:
                response = await asyncio.wait_for(
                    self._send_once(method, url, body=body, params=params),
                    timeout=call_timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"timeout after {call_timeout}s"
                response = None
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                response = None

            if response is not None:
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return self._handle_response(response, endpoint=endpoint, method=method)
                last_error = f"HTTP {response.status_code}"

            if attempt >= self.max_retries:
                logger.error(
                    "[platform] %s %s failed after %s retries: %s", method, endpoint, attempt, last_error
                )
                raise PlatformTransferError(
                    f"Transfer failed after {attempt} retries: {last_error}",
                    status_code=response.status_code if response is not None else None,
                    endpoint=endpoint,
                )

            delay = self.retry_delay_seconds * (2 ** attempt)
            attempt += 1
            self.retry_count += 1
            logger.warning(
                "[platform] %s %s attempt %s failed (%s), retrying in %.1fs",
                method,
                endpoint,
                attempt,
                last_error,
                delay,
            )
            await self._sleep(delay)

    def _handle_response(self, response: httpx.Response, *, endpoint: str, method: str) -> PlatformResponse:
        headers = {k.lower(): v for k, v in response.headers.items()}
        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = response.text

        if response.status_code in (401, 403):
            logger.error(f"[platform] {method} {endpoint} rejected credentials: HTTP {response.status_code}")
            raise PlatformAuthError(
                f"Remote store rejected credentials (HTTP {response.status_code})",
                status_code=response.status_code,
                endpoint=endpoint,
            )
        if response.status_code >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise PlatformError(
                f"HTTP {response.status_code}: {message or response.text[:500]}",
                status_code=response.status_code,
                endpoint=endpoint,
            )
        return PlatformResponse(status_code=response.status_code, payload=payload, headers=headers)

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Any] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        response = await self.send(endpoint, method, body, params=params, timeout=timeout)
        return response.payload

    async def get(self, endpoint: str, *, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request(endpoint, "GET", params=params)

    async def post(self, endpoint: str, body: Any) -> Any:
        return await self.request(endpoint, "POST", body)

    async def put(self, endpoint: str, body: Any) -> Any:
        return await self.request(endpoint, "PUT", body)

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        endpoint: str,
        page: int,
        per_page: int,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> PlatformPage:
        query = dict(params or {})
        query.update({"page": page, "per_page": per_page})
        response = await self.send(endpoint, "GET", params=query)
        items = response.payload if isinstance(response.payload, list) else []
        return PlatformPage(
            items=items,
            page=page,
            per_page=per_page,
            total_items=_int_header(response.headers, "x-wp-total"),
            total_pages=_int_header(response.headers, "x-wp-totalpages"),
        )

    async def iter_pages(
        self,
        endpoint: str,
        per_page: int,
        *,
        params: Optional[Dict[str, Any]] = None,
        start_page: int = 1,
    ) -> AsyncIterator[PlatformPage]:
        """Yield pages until a short or empty page is returned."""
        page = start_page
        while True:
            result = await self.fetch_page(endpoint, page, per_page, params=params)
            if not result.items:
                return
            yield result
            if not result.has_more:
                return
            page += 1

    async def count(self, endpoint: str, *, params: Optional[Dict[str, Any]] = None) -> int:
        """Return the collection size reported in ``X-WP-Total``."""
        query = dict(params or {})
        query.update({"page": 1, "per_page": 1})
        response = await self.send(endpoint, "GET", params=query)
        total = _int_header(response.headers, "x-wp-total")
        if total is None:
            total = len(response.payload) if isinstance(response.payload, list) else 0
        return total

    async def check_connection(self) -> bool:
        if not self.is_configured():
            return False
        try:
            await self.send("system_status", "GET", timeout=min(self.timeout_seconds, 30.0))
            return True
        except PlatformError as exc:
            logger.warning("[platform] Connection check failed: %s", exc.message)
            return False
