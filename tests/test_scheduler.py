"""Tests for the tiered sync scheduler and manual sync."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from wms_sync.models.entities import EntityType, Order, Shipment
from wms_sync.models.sync_state import SyncStatus, SyncTier
from wms_sync.models.tenant import TenantIntegration
from wms_sync.services import sync_state
from wms_sync.services.common import as_utc, utcnow
from wms_sync.services.errors import (
    PermanentSourceError,
    SyncAlreadyRunningError,
    SyncValidationError,
    TransientSourceError,
)
from wms_sync.services.reconciliation import ReconciliationEngine
from wms_sync.services.scheduler import (
    EntitySyncOutcome,
    SyncScheduler,
    TenantSyncOutcome,
    TierRunResult,
    resolve_entity_types,
    summarize_outcomes,
)
from wms_sync.services.scheduler_config import SchedulerSettings, get_tier_configs
from wms_sync.services.sources.base import SourceAdapter, SourcePage

# ---------------------------------------------------------------------------
# Fakes and helpers
# ---------------------------------------------------------------------------


class FakeAdapter(SourceAdapter):
    """In-memory source: ``pages`` maps an entity type to a list of pages."""

    vendor = "generic"

    def __init__(self, pages=None, errors=None, page_size=100):
        super().__init__(page_size=page_size, max_pages=10, truncation_caps=frozenset({1000}))
        self.pages = pages or {}
        self.errors = errors or {}
        self.calls = []

    def list_page(self, tenant, entity_type, since, cursor, deadline=None):
        self.calls.append({"tenant_id": tenant.tenant_id, "entity_type": entity_type, "since": since})
        if entity_type in self.errors:
            raise self.errors[entity_type]
        pages = self.pages.get(entity_type, [])
        index = int(cursor or 0)
        if index >= len(pages):
            return SourcePage(records=[])
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        return SourcePage(records=pages[index], next_cursor=next_cursor)

    def fetch_one(self, tenant, entity_type, external_id, deadline=None):
        raise PermanentSourceError(f"{external_id} not found", code="not_found")


class BlockingAdapter(FakeAdapter):
    """Blocks inside the first list call until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.entered = threading.Event()
        self.thread = None

    def list_page(self, tenant, entity_type, since, cursor, deadline=None):
        self.thread = threading.current_thread()
        self.entered.set()
        self.release.wait(timeout=10)
        return SourcePage(records=[])


def _settings(**overrides):
    values = {
        "concurrency": 1,
        "inter_tenant_delay": 0.0,
        "tenant_timeout": 30.0,
        "stale_run_after": timedelta(hours=1),
        "jitter_seconds": 0,
        "window_overlap": timedelta(minutes=2),
        "manual_default_lookback": timedelta(hours=24),
    }
    values.update(overrides)
    return SchedulerSettings(**values)


def _make_scheduler(session_factory, tenant_directory, adapter, sleeps=None, **settings_overrides):
    return SyncScheduler(
        session_factory=session_factory,
        adapter=adapter,
        tenant_directory=tenant_directory,
        engine=ReconciliationEngine(max_errors=10),
        tier_configs=get_tier_configs(),
        settings=_settings(**settings_overrides),
        sleep=sleeps.append if sleeps is not None else (lambda _seconds: None),
    )


def _recent(minutes_ago=1, external_id="ord-1", status="processing"):
    updated = utcnow() - timedelta(minutes=minutes_ago)
    return {"id": external_id, "status": status, "updated_at": updated.isoformat()}


def _state(db, tenant_id, entity_type, tier):
    return sync_state.get_state(db, tenant_id, entity_type, tier)


# ---------------------------------------------------------------------------
# Tier runs
# ---------------------------------------------------------------------------


class TestRunTier:
    def test_realtime_tier_syncs_orders_and_shipments(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter(
            pages={
                EntityType.orders: [[_recent(external_id="ord-1"), _recent(external_id="ord-2")]],
                EntityType.shipments: [[{**_recent(external_id="shp-1"), "order_id": "ord-1"}]],
            }
        )
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        result = scheduler.run_tier("realtime")

        assert result.count("success") == 2
        assert result.has_errors is False
        assert db_session.execute(select(func.count()).select_from(Order)).scalar() == 2
        assert db_session.execute(select(func.count()).select_from(Shipment)).scalar() == 1
        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.success
        assert state.records_processed == 2
        due_in = as_utc(state.next_scheduled_at) - utcnow()
        assert timedelta(minutes=4) < due_in <= timedelta(minutes=5)
        integration = db_session.execute(select(TenantIntegration)).scalar_one()
        assert integration.last_synced_at is not None

    def test_keys_not_due_are_left_alone(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter()
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        scheduler.run_tier(SyncTier.realtime)
        calls_after_first = len(adapter.calls)
        second = scheduler.run_tier(SyncTier.realtime)

        assert second.count("not_due") == 2
        assert len(adapter.calls) == calls_after_first

    def test_running_key_is_skipped_not_queued(self, db_session, session_factory, tenant_directory, active_tenant):
        held = sync_state.acquire(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        adapter = FakeAdapter()
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        result = scheduler.run_tier(SyncTier.realtime)

        statuses = {e.entity_type: e.status for e in result.tenants[0].entities}
        assert statuses == {"orders": "skipped", "shipments": "success"}
        assert [call["entity_type"] for call in adapter.calls] == [EntityType.shipments]
        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.running
        assert state.run_id == held.run_id

    def test_source_error_schedules_retry(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter(errors={EntityType.orders: TransientSourceError("WMS returned 502")})
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        result = scheduler.run_tier(SyncTier.realtime)

        assert result.count("error") == 1
        assert result.has_errors is True
        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.error
        assert state.error_detail == {"code": "source_unavailable", "detail": "WMS returned 502"}
        assert state.last_sync_at is None
        due_in = as_utc(state.next_scheduled_at) - utcnow()
        assert timedelta(minutes=1) < due_in <= timedelta(minutes=2)

    def test_possible_truncation_marks_partial(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter(
            pages={EntityType.orders: [[_recent(external_id="ord-1"), _recent(external_id="ord-2")]]},
            page_size=2,
        )
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        result = scheduler.run_tier(SyncTier.realtime)

        orders = next(e for e in result.tenants[0].entities if e.entity_type == "orders")
        assert orders.status == "partial"
        assert orders.possible_truncation is True
        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.partial
        assert state.possible_truncation is True
        assert state.error_detail["truncation"]["reason"] == "full_final_page"
        assert state.last_sync_at is not None

    def test_record_errors_mark_partial(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter(pages={EntityType.orders: [[_recent(), {"status": "shipped"}]]})
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        scheduler.run_tier(SyncTier.realtime)

        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.partial
        assert state.error_count == 1
        assert state.error_detail["errors"][0]["error"] == "record has no external id"

    def test_records_outside_window_are_dropped(self, db_session, session_factory, tenant_directory, active_tenant):
        stale = _recent(minutes_ago=24 * 60, external_id="ord-old")
        adapter = FakeAdapter(pages={EntityType.orders: [[_recent(external_id="ord-new"), stale]]})
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        result = scheduler.run_tier(SyncTier.realtime)

        orders = next(e for e in result.tenants[0].entities if e.entity_type == "orders")
        assert orders.fetched == 2
        assert orders.created == 1
        since = adapter.calls[0]["since"]
        expected = utcnow() - timedelta(minutes=32)
        assert abs((since - expected).total_seconds()) < 60

    def test_inter_tenant_delay(self, db_session, session_factory, tenant_directory, tenant_factory):
        tenant_factory(name="Acme")
        tenant_factory(name="Globex")
        sleeps = []
        scheduler = _make_scheduler(session_factory, tenant_directory, FakeAdapter(), sleeps=sleeps, inter_tenant_delay=5)
        db_session.commit()

        result = scheduler.run_tier(SyncTier.low)

        assert len(result.tenants) == 2
        assert sleeps == [5]

    def test_tenant_timeout_is_recorded(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = BlockingAdapter()
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter, tenant_timeout=0.5)
        db_session.commit()

        try:
            result = scheduler.run_tier(SyncTier.low)

            tenant_outcome = result.tenants[0]
            assert tenant_outcome.timed_out is True
            assert [e.status for e in tenant_outcome.entities] == ["timeout"]
            state = _state(db_session, active_tenant.tenant_id, EntityType.warehouses, SyncTier.low)
            assert state.status == SyncStatus.error
            assert state.error_detail["code"] == "timeout"
            assert state.run_id is None
        finally:
            db_session.commit()
            adapter.release.set()
            if adapter.thread is not None:
                adapter.thread.join(timeout=10)

    def test_unexpected_adapter_error_releases_lease(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter(
            errors={EntityType.orders: ValueError("unparseable cursor")},
            pages={EntityType.shipments: [[{**_recent(external_id="shp-1"), "order_id": "ord-1"}]]},
        )
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()

        result = scheduler.run_tier(SyncTier.realtime)

        statuses = {e.entity_type: e.status for e in result.tenants[0].entities}
        assert statuses == {"orders": "error", "shipments": "success"}
        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.error
        assert state.run_id is None
        assert state.error_detail["code"] == "unexpected_error"
        assert state.error_detail["exception"] == "ValueError"
        assert state.next_scheduled_at is not None

    def test_tier_budget_defers_remaining_tenants(self, db_session, session_factory, tenant_directory, tenant_factory):
        tenant_factory(name="Acme")
        tenant_factory(name="Globex")
        adapter = BlockingAdapter()
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter, tier_budget=0.5)
        db_session.commit()

        try:
            result = scheduler.run_tier(SyncTier.low)

            assert len(result.tenants) == 1
            assert result.tenants[0].timed_out is True
            assert len(result.deferred_tenants) == 1
            assert result.as_dict()["deferred_tenants"] == 1
            deferred = result.deferred_tenants[0]
            assert deferred != result.tenants[0].tenant_id
            assert sync_state.list_states(db_session, deferred) == []
            assert result.duration_seconds < 5
        finally:
            db_session.commit()
            adapter.release.set()
            if adapter.thread is not None:
                adapter.thread.join(timeout=10)

    def test_manual_tier_is_not_scheduled(self, session_factory, tenant_directory):
        scheduler = _make_scheduler(session_factory, tenant_directory, FakeAdapter())

        with pytest.raises(ValueError):
            scheduler.run_tier(SyncTier.manual)

    def test_no_tenants(self, session_factory, tenant_directory):
        adapter = FakeAdapter()
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)

        result = scheduler.run_tier(SyncTier.realtime)

        assert result.tenants == []
        assert adapter.calls == []


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


class TestWindows:
    def _scheduler(self, session_factory, tenant_directory):
        return _make_scheduler(session_factory, tenant_directory, FakeAdapter())

    def test_realtime_window_starts_at_last_sync_minus_overlap(self, session_factory, tenant_directory):
        scheduler = self._scheduler(session_factory, tenant_directory)
        config = scheduler.tier_configs[SyncTier.realtime]
        now = utcnow()

        recent = scheduler.window_start(config, now - timedelta(minutes=10), now)
        long_ago = scheduler.window_start(config, now - timedelta(hours=3), now)
        never = scheduler.window_start(config, None, now)

        assert recent == now - timedelta(minutes=12)
        assert long_ago == now - timedelta(minutes=32)
        assert never == now - timedelta(minutes=32)

    def test_low_tier_pulls_everything(self, session_factory, tenant_directory):
        scheduler = self._scheduler(session_factory, tenant_directory)
        now = utcnow()

        assert scheduler.window_start(scheduler.tier_configs[SyncTier.low], now, now) is None

    def test_full_tier_uses_fixed_lookback(self, session_factory, tenant_directory):
        scheduler = self._scheduler(session_factory, tenant_directory)
        now = utcnow()

        start = scheduler.window_start(scheduler.tier_configs[SyncTier.full], now - timedelta(minutes=5), now)

        assert start == now - timedelta(days=30)

    def test_manual_window_defaults(self, db_session, session_factory, tenant_directory, active_tenant):
        scheduler = self._scheduler(session_factory, tenant_directory)
        tenant_id = active_tenant.tenant_id
        now = utcnow()

        assert scheduler.manual_window_start(db_session, tenant_id, EntityType.orders, 7, now) == now - timedelta(days=7)
        assert scheduler.manual_window_start(db_session, tenant_id, EntityType.orders, None, now) == now - timedelta(
            hours=24
        )

        lease = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        sync_state.finish(db_session, lease, SyncStatus.success, None)

        assert scheduler.manual_window_start(db_session, tenant_id, EntityType.orders, None, now) == (
            lease.started_at - timedelta(minutes=2)
        )


# ---------------------------------------------------------------------------
# Manual sync
# ---------------------------------------------------------------------------


class TestRunManual:
    def test_manual_sync_uses_lookback_and_manual_state(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter(pages={EntityType.orders: [[_recent(minutes_ago=3 * 24 * 60)]]})
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)

        outcomes = scheduler.run_manual(db_session, active_tenant, [EntityType.orders], lookback_days=7)

        assert [o.status for o in outcomes] == ["success"]
        assert outcomes[0].created == 1
        since = adapter.calls[0]["since"]
        assert abs((since - (utcnow() - timedelta(days=7))).total_seconds()) < 60
        state = _state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.manual)
        assert state.status == SyncStatus.success
        assert state.next_scheduled_at is None

    def test_manual_sync_refused_when_already_running(self, db_session, session_factory, tenant_directory, active_tenant):
        sync_state.acquire(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.manual)
        scheduler = _make_scheduler(session_factory, tenant_directory, FakeAdapter())

        with pytest.raises(SyncAlreadyRunningError):
            scheduler.run_manual(db_session, active_tenant, [EntityType.orders])

    def test_partially_busy_manual_sync_reports_skipped(self, db_session, session_factory, tenant_directory, active_tenant):
        sync_state.acquire(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.manual)
        scheduler = _make_scheduler(session_factory, tenant_directory, FakeAdapter())

        outcomes = scheduler.run_manual(db_session, active_tenant, [EntityType.orders, EntityType.products])

        assert {o.entity_type: o.status for o in outcomes} == {"orders": "skipped", "products": "success"}

    def test_manual_sync_ignores_tier_cadence(self, db_session, session_factory, tenant_directory, active_tenant):
        adapter = FakeAdapter()
        scheduler = _make_scheduler(session_factory, tenant_directory, adapter)
        db_session.commit()
        scheduler.run_tier(SyncTier.realtime)

        outcomes = scheduler.run_manual(db_session, active_tenant, [EntityType.orders])

        assert outcomes[0].status == "success"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_resolve_entity_types(self):
        assert resolve_entity_types("all") == list(EntityType)
        assert resolve_entity_types("inventory") == [EntityType.inventory]
        with pytest.raises(SyncValidationError):
            resolve_entity_types("customers")

    def test_summarize_outcomes(self):
        summary = summarize_outcomes(
            [
                EntitySyncOutcome(entity_type="orders", status="success", created=2, updated=1),
                EntitySyncOutcome(entity_type="products", status="partial", skipped=4, errors=1),
            ]
        )

        assert (summary["created"], summary["updated"], summary["skipped"], summary["errors"]) == (2, 1, 4, 1)
        assert [r["entity_type"] for r in summary["results"]] == ["orders", "products"]

    def test_tier_run_result_counts(self):
        tenant = TenantSyncOutcome(
            tenant_id=None,
            entities=[
                EntitySyncOutcome(entity_type="orders", status="success"),
                EntitySyncOutcome(entity_type="shipments", status="not_due"),
            ],
        )
        result = TierRunResult(tier="realtime", tenants=[tenant])

        assert result.as_dict()["success"] == 1
        assert result.as_dict()["not_due"] == 1
        assert result.has_errors is False
