"""Tests for the generic WMS HTTP source adapter."""

import json
import time
import uuid
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import httpx
import pytest

from wms_sync.models.entities import EntityType
from wms_sync.services.errors import PermanentSourceError, SyncTimeoutError, TransientSourceError
from wms_sync.services.sources import GenericWMSAdapter, compute_signature, get_source_adapter
from wms_sync.services.sources.circuit_breaker import CircuitBreaker
from wms_sync.services.sources.http import parse_retry_after
from wms_sync.services.tenants import ActiveTenant, SourceCredentials

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_tenant(base_url=None):
    return ActiveTenant(
        tenant_id=uuid.uuid4(),
        name="Acme",
        credentials=SourceCredentials(
            vendor="generic",
            connection_id="conn-1",
            access_token="tenant-token",
            base_url=base_url,
        ),
    )


def _make_adapter(handler, **overrides):
    options = {
        "base_url": "https://wms.test",
        "api_key": "api-key",
        "page_size": 2,
        "max_pages": 3,
        "truncation_caps": frozenset({1000}),
        "max_attempts": 3,
        "retry_base_delay": 0.01,
        "max_rate_limit_waits": 2,
        "circuit_breaker": CircuitBreaker(failure_threshold=50, recovery_timeout=60),
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return GenericWMSAdapter(**options)


def _records(count, prefix="o"):
    return [{"id": f"{prefix}{i}", "updated_at": "2024-05-01T10:00:00Z"} for i in range(count)]


@pytest.fixture()
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr("wms_sync.services.sources.http.time.sleep", calls.append)
    return calls


# ---------------------------------------------------------------------------
# Pagination and truncation
# ---------------------------------------------------------------------------


class TestListEntities:
    def test_follows_cursor_until_exhausted(self, sleeps):
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.params.get("page_token") == "p2":
                return httpx.Response(200, json={"data": _records(1, "b")})
            return httpx.Response(200, json={"data": _records(2, "a"), "next_token": "p2"})

        adapter = _make_adapter(handler)
        since = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)
        result = adapter.list_entities(_make_tenant(), EntityType.orders, since)

        assert [r["id"] for r in result.records] == ["a0", "a1", "b0"]
        assert result.pages == 2
        assert result.possible_truncation is False
        assert result.next_cursor is None
        first = requests[0]
        assert first.url.path == "/wms/orders"
        assert first.url.params["limit"] == "2"
        assert first.url.params["updated_date[gte]"] == since.isoformat()
        assert first.headers["X-API-Key"] == "api-key"
        assert first.headers["X-Access-Token"] == "tenant-token"

    def test_tenant_base_url_overrides_default(self, sleeps):
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            return httpx.Response(200, json={"data": []})

        adapter = _make_adapter(handler)
        adapter.list_entities(_make_tenant(base_url="https://eu.wms.test"), EntityType.products, None)

        assert hosts == ["eu.wms.test"]

    def test_plain_list_response(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(200, json=_records(1)))

        result = adapter.list_entities(_make_tenant(), EntityType.warehouses, None)

        assert len(result.records) == 1
        assert result.pages == 1

    def test_page_cap_flags_truncation_and_returns_cursor(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            token = f"p{len(calls) + 1}"
            return httpx.Response(200, json={"data": _records(2), "next_token": token})

        adapter = _make_adapter(handler)
        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert len(calls) == 3
        assert result.pages == 3
        assert result.possible_truncation is True
        assert result.truncation_reason == "page_cap"
        assert result.next_cursor == "p4"

    def test_round_number_final_page_flags_truncation(self, sleeps):
        adapter = _make_adapter(
            lambda request: httpx.Response(200, json={"data": _records(1000)}),
            page_size=5000,
        )

        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert len(result.records) == 1000
        assert result.possible_truncation is True
        assert result.truncation_reason == "round_number_cap"

    def test_full_final_page_without_cursor_flags_truncation(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(200, json={"data": _records(2)}))

        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert result.possible_truncation is True
        assert result.truncation_reason == "full_final_page"

    def test_short_final_page_is_not_truncated(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(200, json={"data": _records(1)}))

        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert result.possible_truncation is False
        assert result.truncation_reason is None

    def test_unexpected_payload_is_permanent(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(200, json={"data": {"id": "x"}}))

        with pytest.raises(PermanentSourceError):
            adapter.list_entities(_make_tenant(), EntityType.orders, None)

    def test_expired_deadline_raises_before_request(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"data": []})

        adapter = _make_adapter(handler)
        with pytest.raises(SyncTimeoutError):
            adapter.list_entities(_make_tenant(), EntityType.orders, None, deadline=time.monotonic() - 1)
        assert calls == []


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_rate_limit_honors_retry_after(self, sleeps):
        responses = [
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json={"data": _records(1)}),
        ]
        adapter = _make_adapter(lambda request: responses.pop(0))

        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert sleeps == [7.0]
        assert len(result.records) == 1

    def test_rate_limit_waits_are_bounded(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"X-Rate-Limit-Retry-After": "1"})

        adapter = _make_adapter(handler, max_rate_limit_waits=2)
        with pytest.raises(TransientSourceError) as exc_info:
            adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert exc_info.value.code == "rate_limited"
        assert len(calls) == 3
        assert sleeps == [1.0, 1.0]

    def test_long_retry_after_is_capped_without_deadline(self, sleeps):
        responses = [
            httpx.Response(429, headers={"Retry-After": "3600"}),
            httpx.Response(200, json={"data": {"id": "o1"}}),
        ]
        adapter = _make_adapter(lambda request: responses.pop(0), retry_max_delay=5)

        record = adapter.fetch_one(_make_tenant(), EntityType.orders, "o1")

        assert record == {"id": "o1"}
        assert sleeps == [5]

    def test_long_retry_after_past_deadline_raises_timeout(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(429, headers={"Retry-After": "3600"}))

        with pytest.raises(SyncTimeoutError):
            adapter.fetch_one(_make_tenant(), EntityType.orders, "o1", deadline=time.monotonic() + 20)
        assert sleeps == []

    def test_undecodable_response_is_permanent(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.DecodingError("bad gzip stream", request=request)

        adapter = _make_adapter(handler)
        with pytest.raises(PermanentSourceError) as exc_info:
            adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert exc_info.value.code == "request_error"
        assert len(calls) == 1
        assert sleeps == []

    def test_malformed_tenant_base_url_is_permanent(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(200, json={"data": []}))

        with pytest.raises(PermanentSourceError) as exc_info:
            adapter.list_entities(_make_tenant(base_url="https://wms\x7f.test"), EntityType.orders, None)

        assert exc_info.value.code == "request_error"

    def test_client_error_is_not_retried(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "bad filter"})

        adapter = _make_adapter(handler)
        with pytest.raises(PermanentSourceError) as exc_info:
            adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert exc_info.value.retryable is False
        assert len(calls) == 1
        assert sleeps == []

    def test_server_error_retried_then_transient(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        adapter = _make_adapter(handler, max_attempts=3)
        with pytest.raises(TransientSourceError) as exc_info:
            adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert exc_info.value.retryable is True
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_server_error_recovers(self, sleeps):
        responses = [httpx.Response(503), httpx.Response(200, json={"data": _records(1)})]
        adapter = _make_adapter(lambda request: responses.pop(0))

        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert len(result.records) == 1
        assert len(sleeps) == 1

    def test_network_error_is_retried(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"data": []})

        adapter = _make_adapter(handler)
        result = adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert result.records == []
        assert len(calls) == 2

    def test_backoff_past_deadline_raises_timeout(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(500), retry_base_delay=30)

        with pytest.raises(SyncTimeoutError):
            adapter.list_entities(_make_tenant(), EntityType.orders, None, deadline=time.monotonic() + 5)
        assert sleeps == []

    def test_open_circuit_fails_fast(self, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        adapter = _make_adapter(
            handler,
            max_attempts=1,
            circuit_breaker=CircuitBreaker(failure_threshold=1, recovery_timeout=60),
        )
        with pytest.raises(TransientSourceError):
            adapter.list_entities(_make_tenant(), EntityType.orders, None)
        with pytest.raises(TransientSourceError) as exc_info:
            adapter.list_entities(_make_tenant(), EntityType.orders, None)

        assert exc_info.value.code == "circuit_open"
        assert len(calls) == 1

    def test_invalid_json_is_permanent(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(PermanentSourceError):
            adapter.list_entities(_make_tenant(), EntityType.orders, None)


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "12"})) == 12.0

    def test_http_date(self):
        when = datetime.now(UTC) + timedelta(seconds=90)
        response = httpx.Response(429, headers={"Retry-After": format_datetime(when, usegmt=True)})

        assert 80 <= parse_retry_after(response) <= 90

    def test_missing_or_garbage(self):
        assert parse_retry_after(httpx.Response(429)) is None
        assert parse_retry_after(httpx.Response(429, headers={"Retry-After": "soon"})) is None


# ---------------------------------------------------------------------------
# fetch_one / registry / signatures
# ---------------------------------------------------------------------------


class TestFetchOne:
    def test_unwraps_data_envelope(self, sleeps):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"data": {"id": "o1", "status": "cancelled"}})

        adapter = _make_adapter(handler)
        record = adapter.fetch_one(_make_tenant(), EntityType.orders, "o1")

        assert record == {"id": "o1", "status": "cancelled"}
        assert paths == ["/wms/orders/o1"]

    def test_not_found_is_permanent(self, sleeps):
        adapter = _make_adapter(lambda request: httpx.Response(404))

        with pytest.raises(PermanentSourceError) as exc_info:
            adapter.fetch_one(_make_tenant(), EntityType.orders, "missing")
        assert exc_info.value.code == "not_found"


def test_get_source_adapter_registry():
    adapter = get_source_adapter("generic", base_url="https://wms.test", api_key="k")
    assert isinstance(adapter, GenericWMSAdapter)
    with pytest.raises(ValueError):
        get_source_adapter("unknown-vendor")


class TestVerifySignature:
    body = json.dumps({"event_id": "evt-1"}).encode()

    def _adapter(self):
        return _make_adapter(lambda request: httpx.Response(200))

    def test_accepts_hex_digest_with_or_without_prefix(self):
        adapter = self._adapter()
        digest = compute_signature(self.body, "whsec")

        assert adapter.verify_signature(self.body, digest, "whsec") is True
        assert adapter.verify_signature(self.body, f"sha256={digest}", "whsec") is True
        assert adapter.verify_signature(self.body, digest.upper(), "whsec") is True

    def test_rejects_bad_signatures(self):
        adapter = self._adapter()
        digest = compute_signature(self.body, "whsec")

        assert adapter.verify_signature(self.body + b" ", digest, "whsec") is False
        assert adapter.verify_signature(self.body, digest, "other-secret") is False
        assert adapter.verify_signature(self.body, None, "whsec") is False
        assert adapter.verify_signature(self.body, "not-hex", "whsec") is False
