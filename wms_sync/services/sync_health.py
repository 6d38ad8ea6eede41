"""Per-tenant sync and webhook lag for operators.

Health is derived from what is already persisted: the integration's
``last_synced_at``/``last_webhook_at`` stamps, SyncState rows and the
``webhook_events`` ledger. Nothing here writes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from wms_sync.logging import get_logger
from wms_sync.models.sync_state import SyncState, SyncStatus
from wms_sync.models.tenant import TenantIntegration
from wms_sync.models.webhook_event import WebhookEvent
from wms_sync.services.common import as_utc, utcnow
from wms_sync.services.sources.base import SourceAdapter
from wms_sync.services.tenants import ActiveTenant, TenantDirectory

logger = get_logger(__name__)

FAILED_OUTCOMES = ("failed", "abandoned")
ACTIVITY_WINDOW = timedelta(hours=24)
_RECENT_EVENT_LIMIT = 100


@dataclass(frozen=True)
class HealthThresholds:
    sync_lag_warning: timedelta = timedelta(minutes=5)
    sync_lag_critical: timedelta = timedelta(minutes=15)
    webhook_lag_warning: timedelta = timedelta(minutes=2)
    webhook_lag_critical: timedelta = timedelta(minutes=10)
    error_rate_warning: float = 1.0
    error_rate_critical: float = 5.0
    failure_count_warning: int = 5
    failure_count_critical: int = 20


def percentile(values: list[float], p: float) -> float | None:
    """Nearest-rank percentile; None for an empty sample."""
    if not values:
        return None
    ordered = sorted(values)
    index = math.ceil((p / 100) * len(ordered)) - 1
    return ordered[max(index, 0)]


def _lag_ms(stamp: datetime | None, now: datetime) -> int | None:
    stamp = as_utc(stamp)
    if stamp is None:
        return None
    return int((now - stamp).total_seconds() * 1000)


def determine_status(
    sync_lag_ms: int | None,
    webhook_lag_ms: int | None,
    error_rate: float,
    recent_failures: int,
    circuit_open: bool = False,
    thresholds: HealthThresholds | None = None,
) -> str:
    t = thresholds or HealthThresholds()

    def over(lag_ms: int | None, limit: timedelta) -> bool:
        return lag_ms is not None and lag_ms > limit.total_seconds() * 1000

    if (
        over(sync_lag_ms, t.sync_lag_critical)
        or over(webhook_lag_ms, t.webhook_lag_critical)
        or error_rate > t.error_rate_critical
        or recent_failures > t.failure_count_critical
        or circuit_open
    ):
        return "unhealthy"
    if (
        over(sync_lag_ms, t.sync_lag_warning)
        or over(webhook_lag_ms, t.webhook_lag_warning)
        or error_rate > t.error_rate_warning
        or recent_failures > t.failure_count_warning
    ):
        return "degraded"
    return "healthy"


class SyncHealthService:
    def __init__(
        self,
        tenant_directory: TenantDirectory,
        adapter: SourceAdapter | None = None,
        thresholds: HealthThresholds | None = None,
    ):
        self.tenant_directory = tenant_directory
        self.adapter = adapter
        self.thresholds = thresholds or HealthThresholds()

    def _integration(self, db: Session, tenant: ActiveTenant) -> TenantIntegration | None:
        return db.execute(
            select(TenantIntegration)
            .where(TenantIntegration.tenant_id == tenant.tenant_id)
            .where(TenantIntegration.vendor == self.tenant_directory.vendor)
        ).scalar_one_or_none()

    def _circuit_state(self, tenant: ActiveTenant) -> str | None:
        breaker = getattr(self.adapter, "circuit_breaker", None)
        if breaker is None:
            return None
        base_url = (tenant.credentials.base_url or getattr(self.adapter, "base_url", "")).rstrip("/")
        return breaker.state(base_url)

    def _recent_events(self, db: Session, tenant: ActiveTenant, since: datetime) -> list[WebhookEvent]:
        return list(
            db.execute(
                select(WebhookEvent)
                .where(WebhookEvent.tenant_id == tenant.tenant_id)
                .where(WebhookEvent.received_at >= since)
                .order_by(WebhookEvent.received_at.desc())
                .limit(_RECENT_EVENT_LIMIT)
            )
            .scalars()
            .all()
        )

    def _state_summary(self, db: Session, tenant: ActiveTenant) -> dict:
        states = db.execute(select(SyncState).where(SyncState.tenant_id == tenant.tenant_id)).scalars().all()
        summary = {status.value: 0 for status in SyncStatus}
        for state in states:
            summary[state.status.value] += 1
        summary["possible_truncation"] = sum(1 for state in states if state.possible_truncation)
        return summary

    def tenant_health(self, db: Session, tenant: ActiveTenant, now: datetime | None = None) -> dict:
        now = now or utcnow()
        integration = self._integration(db, tenant)
        last_synced_at = integration.last_synced_at if integration else None
        last_webhook_at = integration.last_webhook_at if integration else None
        sync_lag_ms = _lag_ms(last_synced_at, now)
        webhook_lag_ms = _lag_ms(last_webhook_at, now)

        events = self._recent_events(db, tenant, now - ACTIVITY_WINDOW)
        failures = sum(1 for event in events if event.outcome in FAILED_OUTCOMES)
        processed = sum(
            1 for event in events if event.processed_at is not None and event.outcome not in FAILED_OUTCOMES
        )
        total = failures + processed
        error_rate = round(failures / total * 100, 2) if total else 0.0
        circuit_state = self._circuit_state(tenant)

        return {
            "tenant_id": tenant.tenant_id,
            "tenant_name": tenant.name,
            "connection_id": tenant.credentials.connection_id,
            "status": determine_status(
                sync_lag_ms,
                webhook_lag_ms,
                error_rate,
                failures,
                circuit_open=circuit_state == "open",
                thresholds=self.thresholds,
            ),
            "last_synced_at": as_utc(last_synced_at),
            "last_webhook_at": as_utc(last_webhook_at),
            "sync_lag_ms": sync_lag_ms,
            "webhook_lag_ms": webhook_lag_ms,
            "recent_failures": failures,
            "recent_successes": processed,
            "error_rate": error_rate,
            "circuit_state": circuit_state,
            "sync_states": self._state_summary(db, tenant),
        }

    def overview(self, db: Session, now: datetime | None = None) -> dict:
        now = now or utcnow()
        tenants = [self.tenant_health(db, tenant, now) for tenant in self.tenant_directory.list_active_tenants(db)]

        def average(key: str) -> int | None:
            values = [tenant[key] for tenant in tenants if tenant[key] is not None]
            return round(sum(values) / len(values)) if values else None

        aggregate = {
            "total": len(tenants),
            "healthy": sum(1 for tenant in tenants if tenant["status"] == "healthy"),
            "degraded": sum(1 for tenant in tenants if tenant["status"] == "degraded"),
            "unhealthy": sum(1 for tenant in tenants if tenant["status"] == "unhealthy"),
            "avg_sync_lag_ms": average("sync_lag_ms"),
            "avg_webhook_lag_ms": average("webhook_lag_ms"),
            "recent_failures": sum(tenant["recent_failures"] for tenant in tenants),
            "generated_at": now,
        }
        if aggregate["unhealthy"]:
            logger.warning("sync_health_unhealthy_tenants count=%s", aggregate["unhealthy"])
        return {"aggregate": aggregate, "tenants": tenants}

    def tenant_lag(self, db: Session, tenant: ActiveTenant, now: datetime | None = None) -> dict:
        """Detailed lag for one tenant, including webhook processing latency percentiles."""
        now = now or utcnow()
        integration = self._integration(db, tenant)
        last_synced_at = as_utc(integration.last_synced_at) if integration else None
        last_webhook_at = as_utc(integration.last_webhook_at) if integration else None

        events = self._recent_events(db, tenant, now - ACTIVITY_WINDOW)
        processing = [
            (as_utc(event.processed_at) - as_utc(event.received_at)).total_seconds() * 1000
            for event in events
            if event.processed_at is not None and event.received_at is not None
        ]

        def rounded(value: float | None) -> int | None:
            return round(value) if value is not None else None

        return {
            "tenant_id": tenant.tenant_id,
            "tenant_name": tenant.name,
            "sync_lag": {"last_sync_at": last_synced_at, "lag_ms": _lag_ms(last_synced_at, now)},
            "webhook_lag": {"last_webhook_at": last_webhook_at, "lag_ms": _lag_ms(last_webhook_at, now)},
            "processing_lag": {
                "count": len(processing),
                "avg_ms": rounded(sum(processing) / len(processing)) if processing else None,
                "p50_ms": rounded(percentile(processing, 50)),
                "p95_ms": rounded(percentile(processing, 95)),
                "p99_ms": rounded(percentile(processing, 99)),
                "max_ms": rounded(max(processing)) if processing else None,
            },
            "recent_activity": {
                "received": len(events),
                "processed": sum(
                    1 for event in events if event.processed_at is not None and event.outcome not in FAILED_OUTCOMES
                ),
                "failed": sum(1 for event in events if event.outcome in FAILED_OUTCOMES),
                "deferred": sum(1 for event in events if event.processed_at is None),
            },
            "generated_at": now,
        }
