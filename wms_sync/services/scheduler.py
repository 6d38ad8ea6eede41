"""Tiered polling scheduler and manual sync entry point."""

from __future__ import annotations

import secrets
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wms_sync.logging import get_logger
from wms_sync.metrics import record_sync_run
from wms_sync.models.entities import EntityType
from wms_sync.models.sync_state import SyncStatus, SyncTier
from wms_sync.services import sync_state
from wms_sync.services.common import utcnow
from wms_sync.services.errors import (
    SyncAlreadyRunningError,
    SyncError,
    SyncTimeoutError,
    SyncValidationError,
)
from wms_sync.services.reconciliation import ReconciliationEngine
from wms_sync.services.scheduler_config import (
    SchedulerSettings,
    TierConfig,
    get_scheduler_settings,
    get_tier_configs,
)
from wms_sync.services.sources.base import SourceAdapter, check_deadline
from wms_sync.services.tenants import ActiveTenant, TenantDirectory
from wms_sync.telemetry import get_tracer

logger = get_logger(__name__)

WindowFn = Callable[[sync_state.RunLease, datetime], datetime | None]


@dataclass
class EntitySyncOutcome:
    entity_type: str
    status: str  # success, partial, error, timeout, skipped, not_due
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    fetched: int = 0
    possible_truncation: bool = False
    detail: dict | None = None

    def as_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "status": self.status,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "fetched": self.fetched,
            "possible_truncation": self.possible_truncation,
            "detail": self.detail,
        }


@dataclass
class TenantSyncOutcome:
    tenant_id: uuid.UUID
    entities: list[EntitySyncOutcome] = field(default_factory=list)
    timed_out: bool = False
    error: str | None = None


@dataclass
class TierRunResult:
    tier: str
    tenants: list[TenantSyncOutcome] = field(default_factory=list)
    deferred_tenants: list[uuid.UUID] = field(default_factory=list)
    duration_seconds: float = 0.0

    def count(self, status: str) -> int:
        return sum(1 for tenant in self.tenants for entity in tenant.entities if entity.status == status)

    @property
    def has_errors(self) -> bool:
        return any(tenant.error or tenant.timed_out for tenant in self.tenants) or bool(
            self.count("error") or self.count("timeout")
        )

    def as_dict(self) -> dict:
        return {
            "tier": self.tier,
            "tenants": len(self.tenants),
            "success": self.count("success"),
            "partial": self.count("partial"),
            "error": self.count("error"),
            "timeout": self.count("timeout"),
            "skipped": self.count("skipped"),
            "not_due": self.count("not_due"),
            "deferred_tenants": len(self.deferred_tenants),
            "duration_seconds": round(self.duration_seconds, 2),
        }


class _TenantRun:
    """State shared between the coordinating thread and a tenant worker."""

    def __init__(self, tenant: ActiveTenant, deadline: float):
        self.tenant = tenant
        self.deadline = deadline
        self.cancelled = threading.Event()
        self.current_lease: sync_state.RunLease | None = None
        self.outcome = TenantSyncOutcome(tenant_id=tenant.tenant_id)
        self._lock = threading.Lock()

    def add(self, entity_outcome: EntitySyncOutcome) -> None:
        with self._lock:
            self.outcome.entities.append(entity_outcome)


class SyncScheduler:
    """
    Drives polling sync for every active tenant, one tier at a time.

    Per (tenant, entity type, tier) the SyncState row moves
    idle -> running -> success | partial | error and carries the next due
    time. A tier run only touches keys that are due, skips keys another run
    holds, and bounds each tenant by a hard timeout. The tier task is fired
    by Celery beat at the tier's tick; this object decides what is due.
    """

    def __init__(
        self,
        session_factory,
        adapter: SourceAdapter,
        tenant_directory: TenantDirectory,
        engine: ReconciliationEngine,
        tier_configs: dict[SyncTier, TierConfig] | None = None,
        settings: SchedulerSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.adapter = adapter
        self.tenant_directory = tenant_directory
        self.engine = engine
        self.tier_configs = tier_configs or get_tier_configs()
        self.settings = settings or get_scheduler_settings()
        self._sleep = sleep
        self._manual_in_flight: set[tuple[uuid.UUID, EntityType]] = set()
        self._manual_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Windows and due times
    # ------------------------------------------------------------------

    def next_run_at(self, interval: timedelta, now: datetime | None = None) -> datetime:
        now = now or utcnow()
        jitter = self.settings.jitter_seconds
        if jitter > 0:
            return now + interval + timedelta(seconds=secrets.randbelow(jitter + 1))
        return now + interval

    def window_start(self, config: TierConfig, last_sync_at: datetime | None, now: datetime) -> datetime | None:
        if config.fixed_lookback is not None:
            return now - config.fixed_lookback
        if config.window is None:
            return None
        floor = now - config.window
        start = max(last_sync_at, floor) if last_sync_at else floor
        return start - self.settings.window_overlap

    def manual_window_start(
        self, db: Session, tenant_id: uuid.UUID, entity_type: EntityType, lookback_days: int | None, now: datetime
    ) -> datetime:
        if lookback_days is not None:
            return now - timedelta(days=lookback_days)
        last = sync_state.latest_success_at(db, tenant_id, entity_type)
        if last is not None:
            return last - self.settings.window_overlap
        return now - self.settings.manual_default_lookback

    def _within_window(self, record: dict, since: datetime | None) -> bool:
        if since is None or not isinstance(record, dict):
            return True
        updated_at = self.adapter.updated_at(record)
        return updated_at is None or updated_at >= since

    # ------------------------------------------------------------------
    # Single key sync
    # ------------------------------------------------------------------

    def _sync_entity(
        self,
        db: Session,
        run: _TenantRun,
        tier: SyncTier,
        entity_type: EntityType,
        window: WindowFn,
        success_interval: timedelta | None,
        retry_interval: timedelta | None,
    ) -> EntitySyncOutcome:
        tenant = run.tenant
        outcome = EntitySyncOutcome(entity_type=entity_type.value, status="skipped")
        lease = sync_state.acquire(db, tenant.tenant_id, entity_type, tier, stale_after=self.settings.stale_run_after)
        if lease is None:
            outcome.detail = {"code": "already_running"}
            record_sync_run(tier.value, entity_type.value, "skipped")
            return outcome

        def _next(interval: timedelta | None) -> datetime | None:
            return self.next_run_at(interval) if interval is not None else None

        run.current_lease = lease
        since = window(lease, lease.started_at)
        logger.info(
            "sync_entity_start tenant_id=%s tier=%s entity_type=%s since=%s run_id=%s",
            tenant.tenant_id,
            tier.value,
            entity_type.value,
            since.isoformat() if since else None,
            lease.run_id,
        )
        tracer = get_tracer()
        try:
            with tracer.start_as_current_span("wms_sync.entity") as span:
                span.set_attribute("wms.tier", tier.value)
                span.set_attribute("wms.entity_type", entity_type.value)
                span.set_attribute("wms.tenant_id", str(tenant.tenant_id))
                listing = self.adapter.list_entities(tenant, entity_type, since, deadline=run.deadline)
                records = [record for record in listing.records if self._within_window(record, since)]
                check_deadline(run.deadline)
                if run.cancelled.is_set():
                    raise SyncTimeoutError("tenant run cancelled")
                result = self.engine.reconcile(db, tenant.tenant_id, entity_type, records)
        except SyncTimeoutError as exc:
            db.rollback()
            outcome.status = "timeout"
            outcome.detail = {"code": "timeout", "detail": exc.detail}
            sync_state.mark_timed_out(db, lease, _next(retry_interval), exc.detail)
            record_sync_run(tier.value, entity_type.value, "timeout")
            logger.warning(
                "sync_entity_timeout tenant_id=%s tier=%s entity_type=%s", tenant.tenant_id, tier.value, entity_type.value
            )
            return outcome
        except SyncError as exc:
            db.rollback()
            outcome.status = "error"
            outcome.errors = 1
            outcome.detail = exc.to_detail()
            sync_state.finish(db, lease, SyncStatus.error, _next(retry_interval), error_count=1, error_detail=outcome.detail)
            record_sync_run(tier.value, entity_type.value, "error")
            logger.warning(
                "sync_entity_failed tenant_id=%s tier=%s entity_type=%s code=%s detail=%s",
                tenant.tenant_id,
                tier.value,
                entity_type.value,
                exc.code,
                exc.detail,
            )
            return outcome
        except SQLAlchemyError as exc:
            db.rollback()
            outcome.status = "error"
            outcome.errors = 1
            outcome.detail = {"code": "storage_error", "detail": str(exc)[:500]}
            logger.exception(
                "sync_entity_storage_error tenant_id=%s tier=%s entity_type=%s",
                tenant.tenant_id,
                tier.value,
                entity_type.value,
            )
            sync_state.finish(db, lease, SyncStatus.error, _next(retry_interval), error_count=1, error_detail=outcome.detail)
            record_sync_run(tier.value, entity_type.value, "error")
            return outcome
        except Exception as exc:
            db.rollback()
            outcome.status = "error"
            outcome.errors = 1
            outcome.detail = {
                "code": "unexpected_error",
                "detail": (str(exc) or exc.__class__.__name__)[:500],
                "exception": exc.__class__.__name__,
            }
            logger.exception(
                "sync_entity_unexpected_error tenant_id=%s tier=%s entity_type=%s",
                tenant.tenant_id,
                tier.value,
                entity_type.value,
            )
            sync_state.finish(db, lease, SyncStatus.error, _next(retry_interval), error_count=1, error_detail=outcome.detail)
            record_sync_run(tier.value, entity_type.value, "error")
            return outcome
        finally:
            run.current_lease = None

        outcome.created = result.created
        outcome.updated = result.updated
        outcome.skipped = result.skipped
        outcome.errors = result.error_count
        outcome.fetched = len(listing.records)
        outcome.possible_truncation = listing.possible_truncation

        detail: dict | None = None
        if result.has_errors or listing.possible_truncation or result.mapping_gaps:
            detail = {}
            if result.has_errors:
                detail["errors"] = result.errors
            if listing.possible_truncation:
                detail["truncation"] = {
                    "reason": listing.truncation_reason,
                    "records": len(listing.records),
                    "pages": listing.pages,
                    "next_cursor": listing.next_cursor,
                }
            if result.mapping_gaps:
                detail["mapping_gaps"] = result.mapping_gaps[: self.engine.max_errors]
        outcome.detail = detail

        status = SyncStatus.partial if result.has_errors or listing.possible_truncation else SyncStatus.success
        outcome.status = status.value
        self.tenant_directory.touch(db, tenant.tenant_id, "last_synced_at")
        sync_state.finish(
            db,
            lease,
            status,
            _next(success_interval),
            records_processed=len(records),
            error_count=result.error_count,
            error_detail=detail,
            possible_truncation=listing.possible_truncation,
        )
        record_sync_run(tier.value, entity_type.value, status.value)
        logger.info(
            "sync_entity_complete tenant_id=%s tier=%s entity_type=%s status=%s fetched=%s created=%s "
            "updated=%s skipped=%s errors=%s",
            tenant.tenant_id,
            tier.value,
            entity_type.value,
            status.value,
            len(listing.records),
            result.created,
            result.updated,
            result.skipped,
            result.error_count,
        )
        return outcome

    # ------------------------------------------------------------------
    # Tier runs
    # ------------------------------------------------------------------

    def _run_tenant(self, run: _TenantRun, config: TierConfig) -> TenantSyncOutcome:
        db = self.session_factory()
        try:
            for entity_type in config.entity_types:
                if run.cancelled.is_set():
                    break
                state = sync_state.get_state(db, run.tenant.tenant_id, entity_type, config.tier)
                if not sync_state.is_due(state):
                    db.rollback()
                    run.add(EntitySyncOutcome(entity_type=entity_type.value, status="not_due"))
                    continue

                def _window(lease, now, _config=config):
                    return self.window_start(_config, lease.previous_last_sync_at, now)

                entity_outcome = self._sync_entity(
                    db,
                    run,
                    config.tier,
                    entity_type,
                    _window,
                    config.cadence,
                    config.retry_after_error,
                )
                if run.cancelled.is_set():
                    # the coordinator already recorded this tenant as timed out
                    break
                run.add(entity_outcome)
        finally:
            db.close()
        return run.outcome

    def _record_timeout(self, run: _TenantRun, config: TierConfig) -> None:
        run.cancelled.set()
        run.outcome.timed_out = True
        lease = run.current_lease
        logger.warning(
            "WMS_SYNC_TENANT_TIMEOUT tenant_id=%s tier=%s entity_type=%s timeout=%ss",
            run.tenant.tenant_id,
            config.tier.value,
            lease.entity_type.value if lease else None,
            self.settings.tenant_timeout,
        )
        if lease is None:
            return
        db = self.session_factory()
        try:
            sync_state.mark_timed_out(
                db,
                lease,
                self.next_run_at(config.retry_after_error),
                f"tenant sync exceeded {self.settings.tenant_timeout:.0f}s",
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("sync_state_timeout_write_failed tenant_id=%s", run.tenant.tenant_id)
        finally:
            db.close()
        run.add(
            EntitySyncOutcome(
                entity_type=lease.entity_type.value,
                status="timeout",
                detail={"code": "timeout"},
            )
        )
        record_sync_run(config.tier.value, lease.entity_type.value, "timeout")

    def run_tier(self, tier: SyncTier | str) -> TierRunResult:
        tier = SyncTier(tier)
        if tier == SyncTier.manual:
            raise ValueError("The manual tier is not scheduled")
        config = self.tier_configs[tier]
        result = TierRunResult(tier=tier.value)
        start = time.monotonic()

        db = self.session_factory()
        try:
            tenants = self.tenant_directory.list_active_tenants(db)
        finally:
            db.close()
        if not tenants:
            logger.info("WMS_SYNC_TIER_EXIT tier=%s reason=no_tenants", tier.value)
            return result

        concurrency = self.settings.concurrency
        tier_deadline = start + self.settings.tier_budget
        # Extra threads are only spawned when a timed-out worker is still stuck.
        executor = ThreadPoolExecutor(max_workers=len(tenants), thread_name_prefix=f"wms-sync-{tier.value}")
        pending: dict[Future, _TenantRun] = {}
        queue = list(tenants)
        submitted = 0
        try:
            while queue or pending:
                while queue and len(pending) < concurrency:
                    if submitted and self.settings.inter_tenant_delay > 0:
                        self._sleep(self.settings.inter_tenant_delay)
                    now = time.monotonic()
                    if now >= tier_deadline:
                        # remaining tenants stay due and are picked up next tick
                        result.deferred_tenants.extend(t.tenant_id for t in queue)
                        logger.warning(
                            "WMS_SYNC_TIER_BUDGET_EXHAUSTED tier=%s budget=%ss deferred=%d",
                            tier.value,
                            self.settings.tier_budget,
                            len(queue),
                        )
                        queue = []
                        break
                    tenant = queue.pop(0)
                    deadline = min(now + self.settings.tenant_timeout, tier_deadline)
                    run = _TenantRun(tenant, deadline=deadline)
                    pending[executor.submit(self._run_tenant, run, config)] = run
                    submitted += 1

                if not pending:
                    break
                nearest = min(run.deadline for run in pending.values())
                done, _ = wait(
                    list(pending),
                    timeout=max(nearest - time.monotonic(), 0),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    run = pending.pop(future)
                    try:
                        result.tenants.append(future.result())
                    except Exception as exc:
                        logger.exception(
                            "WMS_SYNC_TENANT_FAILED tier=%s tenant_id=%s", tier.value, run.tenant.tenant_id
                        )
                        run.outcome.error = str(exc) or exc.__class__.__name__
                        result.tenants.append(run.outcome)

                now = time.monotonic()
                for future, run in list(pending.items()):
                    if now >= run.deadline:
                        pending.pop(future)
                        self._record_timeout(run, config)
                        result.tenants.append(run.outcome)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        result.duration_seconds = time.monotonic() - start
        return result

    # ------------------------------------------------------------------
    # Manual sync
    # ------------------------------------------------------------------

    def run_manual(
        self,
        db: Session,
        tenant: ActiveTenant,
        entity_types: list[EntityType],
        lookback_days: int | None = None,
    ) -> list[EntitySyncOutcome]:
        """Sync the given entity types now, ignoring cadence.

        Raises SyncAlreadyRunningError when every requested type is already
        being synced for this tenant.
        """
        keys = [(tenant.tenant_id, entity_type) for entity_type in entity_types]
        with self._manual_lock:
            busy = [key for key in keys if key in self._manual_in_flight]
            if busy and len(busy) == len(keys):
                raise SyncAlreadyRunningError(
                    f"Manual sync already running for tenant {tenant.tenant_id}"
                )
            claimed = [key for key in keys if key not in self._manual_in_flight]
            self._manual_in_flight.update(claimed)

        run = _TenantRun(tenant, deadline=time.monotonic() + self.settings.tenant_timeout)
        outcomes: list[EntitySyncOutcome] = []
        try:
            for entity_type in entity_types:
                if (tenant.tenant_id, entity_type) not in claimed:
                    outcomes.append(
                        EntitySyncOutcome(entity_type=entity_type.value, status="skipped", detail={"code": "already_running"})
                    )
                    continue
                since = self.manual_window_start(db, tenant.tenant_id, entity_type, lookback_days, utcnow())

                def _window(lease, now, _since=since):
                    return _since

                outcomes.append(
                    self._sync_entity(db, run, SyncTier.manual, entity_type, _window, None, None)
                )
        finally:
            with self._manual_lock:
                self._manual_in_flight.difference_update(claimed)

        if outcomes and all(
            outcome.status == "skipped" and (outcome.detail or {}).get("code") == "already_running"
            for outcome in outcomes
        ):
            raise SyncAlreadyRunningError(f"Manual sync already running for tenant {tenant.tenant_id}")
        return outcomes


def resolve_entity_types(value: str) -> list[EntityType]:
    """Expand a manual-sync target; ``all`` means every entity type."""
    if value == "all":
        return list(EntityType)
    try:
        return [EntityType(value)]
    except ValueError as exc:
        raise SyncValidationError(f"Unknown entity type: {value}", code="invalid_entity_type") from exc


def summarize_outcomes(outcomes: list[EntitySyncOutcome]) -> dict:
    return {
        "created": sum(outcome.created for outcome in outcomes),
        "updated": sum(outcome.updated for outcome in outcomes),
        "skipped": sum(outcome.skipped for outcome in outcomes),
        "errors": sum(outcome.errors for outcome in outcomes),
        "results": [outcome.as_dict() for outcome in outcomes],
    }
