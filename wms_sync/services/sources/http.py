"""HTTP adapter for a generic paginated WMS REST API."""

from __future__ import annotations

import secrets
import threading
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx

from wms_sync.config import settings
from wms_sync.logging import get_logger
from wms_sync.metrics import record_source_request
from wms_sync.models.entities import EntityType
from wms_sync.services.errors import PermanentSourceError, SyncTimeoutError, TransientSourceError
from wms_sync.services.sources.base import SourceAdapter, SourcePage, check_deadline
from wms_sync.services.sources.circuit_breaker import CircuitBreaker, CircuitOpenError
from wms_sync.services.tenants import ActiveTenant

logger = get_logger(__name__)

ENTITY_PATHS = {
    EntityType.orders: "/wms/orders",
    EntityType.shipments: "/wms/shipments",
    EntityType.products: "/wms/products",
    EntityType.inventory: "/wms/inventory",
    EntityType.inbound_shipments: "/wms/inbound-shipments",
    EntityType.warehouses: "/wms/warehouses",
}

_RETRY_AFTER_HEADERS = ("Retry-After", "X-Rate-Limit-Retry-After")


class _ServerError(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"server error {response.status_code}")
        self.response = response


def parse_retry_after(response: httpx.Response) -> float | None:
    for header in _RETRY_AFTER_HEADERS:
        raw = response.headers.get(header)
        if not raw:
            continue
        raw = raw.strip()
        try:
            return max(float(raw), 0.0)
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            continue
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return max((when - datetime.now(UTC)).total_seconds(), 0.0)
    return None


class GenericWMSAdapter(SourceAdapter):
    """
    Adapter for WMS APIs exposing ``/wms/<entity>`` list endpoints.

    List responses look like ``{"data": [...], "next_token": "..."}``; the
    API key goes in ``X-API-Key`` and the tenant's connection token in
    ``X-Access-Token``.

    Retry policy:
    - network errors and 5xx: exponential backoff, then TransientSourceError
    - 429: wait Retry-After (or backoff) inside the call, bounded by
      ``max_rate_limit_waits``
    - other 4xx: PermanentSourceError, no retry
    """

    vendor = "generic"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
        retry_multiplier: float | None = None,
        retry_max_delay: float | None = None,
        max_rate_limit_waits: int | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        transport: httpx.BaseTransport | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.base_url = (base_url or settings.wms_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.wms_api_key
        self.timeout = timeout or settings.wms_http_timeout_seconds
        self.max_attempts = max(max_attempts or settings.wms_retry_max_attempts, 1)
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.wms_retry_base_delay
        )
        self.retry_multiplier = retry_multiplier or settings.wms_retry_multiplier
        self.retry_max_delay = retry_max_delay or settings.wms_retry_max_delay
        self.max_rate_limit_waits = (
            max_rate_limit_waits if max_rate_limit_waits is not None else settings.wms_max_rate_limit_waits
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.wms_circuit_failure_threshold,
            recovery_timeout=settings.wms_circuit_recovery_seconds,
        )
        self._transport = transport
        self._clients: dict[str, httpx.Client] = {}
        self._clients_lock = threading.Lock()

    def _get_client(self, base_url: str) -> httpx.Client:
        with self._clients_lock:
            client = self._clients.get(base_url)
            if client is None:
                headers = {
                    "Accept": "application/json",
                    "User-Agent": "wms-sync/1.0",
                }
                if self.api_key:
                    headers["X-API-Key"] = self.api_key
                client = httpx.Client(
                    base_url=base_url,
                    timeout=self.timeout,
                    headers=headers,
                    transport=self._transport,
                )
                self._clients[base_url] = client
            return client

    def close(self) -> None:
        with self._clients_lock:
            for client in self._clients.values():
                client.close()
            self._clients = {}

    def _backoff(self, attempt: int) -> float:
        backoff = min(self.retry_base_delay * (self.retry_multiplier**attempt), self.retry_max_delay)
        jitter = backoff * (secrets.randbelow(2500) / 10000)
        return backoff + jitter

    def _sleep(self, seconds: float, deadline: float | None) -> None:
        if deadline is not None and time.monotonic() + seconds >= deadline:
            raise SyncTimeoutError(f"backoff of {seconds:.1f}s would pass the sync deadline")
        time.sleep(seconds)

    def _send(self, client: httpx.Client, method: str, path: str, params, headers) -> httpx.Response:
        response = client.request(method, path, params=params, headers=headers)
        if response.status_code >= 500:
            raise _ServerError(response)
        return response

    def _request(
        self,
        tenant: ActiveTenant,
        method: str,
        path: str,
        params: dict | None = None,
        deadline: float | None = None,
    ):
        base_url = (tenant.credentials.base_url or self.base_url).rstrip("/")
        try:
            client = self._get_client(base_url)
        except httpx.InvalidURL as exc:
            raise PermanentSourceError(f"invalid WMS base URL {base_url!r}: {exc}", code="request_error") from exc
        headers = {}
        if tenant.credentials.access_token:
            headers["X-Access-Token"] = tenant.credentials.access_token

        attempt = 0
        rate_limit_waits = 0
        while True:
            check_deadline(deadline)
            try:
                response = self.circuit_breaker.call(base_url, self._send, client, method, path, params, headers)
            except CircuitOpenError as exc:
                raise TransientSourceError(str(exc), code="circuit_open") from exc
            except (httpx.TransportError, _ServerError) as exc:
                status = "server_error" if isinstance(exc, _ServerError) else "network_error"
                record_source_request(self.vendor, status)
                attempt += 1
                if attempt >= self.max_attempts:
                    raise TransientSourceError(
                        f"{method} {path} failed after {attempt} attempts: {exc}"
                    ) from exc
                wait = self._backoff(attempt - 1)
                logger.warning(
                    "source_request_retry vendor=%s path=%s attempt=%s wait=%.2f error=%s",
                    self.vendor,
                    path,
                    attempt,
                    wait,
                    exc,
                )
                self._sleep(wait, deadline)
                continue
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                record_source_request(self.vendor, "request_error")
                raise PermanentSourceError(f"{method} {path} failed: {exc}", code="request_error") from exc

            if response.status_code == 429:
                record_source_request(self.vendor, "rate_limited")
                rate_limit_waits += 1
                if rate_limit_waits > self.max_rate_limit_waits:
                    raise TransientSourceError(
                        f"{method} {path} still rate limited after {self.max_rate_limit_waits} waits",
                        code="rate_limited",
                    )
                wait = parse_retry_after(response)
                if wait is None:
                    wait = self._backoff(rate_limit_waits - 1)
                elif deadline is None:
                    # no caller deadline; never park a thread on a huge Retry-After
                    wait = min(wait, self.retry_max_delay)
                logger.warning("source_rate_limited vendor=%s path=%s wait=%.2f", self.vendor, path, wait)
                self._sleep(wait, deadline)
                continue

            if response.status_code >= 400:
                record_source_request(self.vendor, "client_error")
                logger.warning(
                    "source_request_rejected vendor=%s path=%s status=%s body=%s",
                    self.vendor,
                    path,
                    response.status_code,
                    response.text[:500],
                )
                raise PermanentSourceError(
                    f"{method} {path} rejected with status {response.status_code}",
                    code="not_found" if response.status_code == 404 else "source_rejected",
                )

            record_source_request(self.vendor, "ok")
            try:
                return response.json() if response.content else None
            except ValueError as exc:
                raise PermanentSourceError(f"{method} {path} returned invalid JSON") from exc

    def list_page(self, tenant, entity_type, since, cursor, deadline=None) -> SourcePage:
        params: dict[str, object] = {"limit": self.page_size}
        if since is not None:
            params["updated_date[gte]"] = since.astimezone(UTC).isoformat()
        if cursor:
            params["page_token"] = cursor
        data = self._request(tenant, "GET", ENTITY_PATHS[entity_type], params=params, deadline=deadline)
        if isinstance(data, list):
            return SourcePage(records=data)
        if not isinstance(data, dict):
            raise PermanentSourceError(f"Unexpected list response for {entity_type.value}")
        records = data.get("data") or []
        if not isinstance(records, list):
            raise PermanentSourceError(f"Unexpected list payload for {entity_type.value}")
        return SourcePage(records=records, next_cursor=data.get("next_token") or None)

    def fetch_one(self, tenant, entity_type, external_id, deadline=None) -> dict:
        path = f"{ENTITY_PATHS[entity_type]}/{external_id}"
        data = self._request(tenant, "GET", path, deadline=deadline)
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            return data["data"]
        if not isinstance(data, dict):
            raise PermanentSourceError(f"Unexpected response fetching {entity_type.value} {external_id}")
        return data
