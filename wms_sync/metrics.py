"""Prometheus metrics for WMS sync."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

JOB_RUNS = Counter(
    "wms_sync_job_runs_total",
    "Background job runs",
    ["job", "status"],
)

JOB_DURATION = Histogram(
    "wms_sync_job_duration_seconds",
    "Background job duration",
    ["job"],
)

SYNC_RUNS = Counter(
    "wms_sync_runs_total",
    "Per tenant/entity sync attempts",
    ["tier", "entity_type", "status"],  # status: success, partial, error, timeout, skipped
)

RECONCILE_RECORDS = Counter(
    "wms_sync_reconcile_records_total",
    "Records passed through reconciliation",
    ["entity_type", "outcome"],  # outcome: created, updated, skipped, error
)

MAPPING_GAPS = Counter(
    "wms_sync_mapping_gaps_total",
    "Vendor statuses with no normalization entry",
    ["entity_type"],
)

POSSIBLE_TRUNCATIONS = Counter(
    "wms_sync_possible_truncations_total",
    "List fetches flagged as possibly truncated",
    ["entity_type", "reason"],
)

SOURCE_REQUESTS = Counter(
    "wms_sync_source_requests_total",
    "HTTP requests made to the WMS",
    ["vendor", "status"],  # status: ok, rate_limited, server_error, client_error, network_error
)

WEBHOOK_EVENTS = Counter(
    "wms_sync_webhook_events_total",
    "Inbound webhook deliveries",
    ["category", "outcome"],
)


def observe_job(name: str, status: str, duration: float) -> None:
    JOB_RUNS.labels(job=name, status=status).inc()
    JOB_DURATION.labels(job=name).observe(duration)


def record_sync_run(tier: str, entity_type: str, status: str) -> None:
    SYNC_RUNS.labels(tier=tier, entity_type=entity_type, status=status).inc()


def record_reconcile(entity_type: str, outcome: str, count: int = 1) -> None:
    if count:
        RECONCILE_RECORDS.labels(entity_type=entity_type, outcome=outcome).inc(count)


def record_mapping_gap(entity_type: str) -> None:
    MAPPING_GAPS.labels(entity_type=entity_type).inc()


def record_truncation(entity_type: str, reason: str) -> None:
    POSSIBLE_TRUNCATIONS.labels(entity_type=entity_type, reason=reason).inc()


def record_source_request(vendor: str, status: str) -> None:
    SOURCE_REQUESTS.labels(vendor=vendor, status=status).inc()


def record_webhook_event(category: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(category=category, outcome=outcome).inc()
