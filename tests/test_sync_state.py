from datetime import timedelta

import pytest
from sqlalchemy import update

from wms_sync.models.entities import EntityType
from wms_sync.models.sync_state import SyncState, SyncStatus, SyncTier
from wms_sync.services import sync_state
from wms_sync.services.common import as_utc, utcnow


def _backdate_start(db, tenant_id, entity_type, tier, age):
    db.execute(
        update(SyncState)
        .where(SyncState.tenant_id == tenant_id)
        .where(SyncState.entity_type == entity_type)
        .where(SyncState.tier == tier)
        .values(started_at=utcnow() - age)
    )
    db.commit()


class TestAcquire:
    def test_acquire_creates_row_and_marks_running(self, db_session, active_tenant):
        lease = sync_state.acquire(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)

        assert lease is not None
        state = sync_state.get_state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.running
        assert state.run_id == lease.run_id
        assert lease.previous_last_sync_at is None

    def test_second_acquire_is_refused_while_running(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id
        first = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        second = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)

        assert first is not None
        assert second is None

    def test_keys_are_independent_per_tier_and_entity(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id

        assert sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        assert sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.full)
        assert sync_state.acquire(db_session, tenant_id, EntityType.shipments, SyncTier.realtime)

    def test_stale_running_row_is_taken_over(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id
        old = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        _backdate_start(db_session, tenant_id, EntityType.orders, SyncTier.realtime, timedelta(hours=2))

        new = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)

        assert new is not None
        assert new.run_id != old.run_id
        # the superseded run can no longer record an outcome
        assert sync_state.finish(db_session, old, SyncStatus.success, None) is False
        state = sync_state.get_state(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.running
        assert state.run_id == new.run_id


class TestFinish:
    def test_success_advances_last_sync_to_run_start(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id
        lease = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        next_at = utcnow() + timedelta(minutes=5)

        applied = sync_state.finish(db_session, lease, SyncStatus.success, next_at, records_processed=12)

        assert applied is True
        state = sync_state.get_state(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.success
        assert state.run_id is None
        assert state.records_processed == 12
        assert as_utc(state.last_sync_at) == lease.started_at
        assert as_utc(state.next_scheduled_at) == next_at

    def test_error_keeps_previous_last_sync(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id
        first = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        sync_state.finish(db_session, first, SyncStatus.success, None)

        second = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        sync_state.finish(
            db_session,
            second,
            SyncStatus.error,
            None,
            error_count=1,
            error_detail={"code": "source_unavailable", "detail": "502"},
        )

        state = sync_state.get_state(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.error
        assert state.error_detail == {"code": "source_unavailable", "detail": "502"}
        assert as_utc(state.last_sync_at) == first.started_at
        assert second.previous_last_sync_at == first.started_at

    def test_partial_records_truncation(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id
        lease = sync_state.acquire(db_session, tenant_id, EntityType.products, SyncTier.medium)

        sync_state.finish(db_session, lease, SyncStatus.partial, None, possible_truncation=True)

        state = sync_state.get_state(db_session, tenant_id, EntityType.products, SyncTier.medium)
        assert state.possible_truncation is True
        assert as_utc(state.last_sync_at) == lease.started_at

    def test_timed_out_run_is_an_error(self, db_session, active_tenant):
        lease = sync_state.acquire(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)

        sync_state.mark_timed_out(db_session, lease, None, "tenant sync exceeded 300s")

        state = sync_state.get_state(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)
        assert state.status == SyncStatus.error
        assert state.error_detail["code"] == "timeout"
        assert state.last_sync_at is None

    def test_non_terminal_status_rejected(self, db_session, active_tenant):
        lease = sync_state.acquire(db_session, active_tenant.tenant_id, EntityType.orders, SyncTier.realtime)

        with pytest.raises(ValueError):
            sync_state.finish(db_session, lease, SyncStatus.running, None)


class TestQueries:
    def test_is_due(self):
        now = utcnow()
        assert sync_state.is_due(None, now) is True
        assert sync_state.is_due(SyncState(next_scheduled_at=None), now) is True
        assert sync_state.is_due(SyncState(next_scheduled_at=now - timedelta(seconds=1)), now) is True
        assert sync_state.is_due(SyncState(next_scheduled_at=now + timedelta(minutes=1)), now) is False

    def test_latest_success_spans_tiers(self, db_session, active_tenant):
        tenant_id = active_tenant.tenant_id
        full = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.full)
        sync_state.finish(db_session, full, SyncStatus.success, None)
        realtime = sync_state.acquire(db_session, tenant_id, EntityType.orders, SyncTier.realtime)
        sync_state.finish(db_session, realtime, SyncStatus.success, None)

        assert sync_state.latest_success_at(db_session, tenant_id, EntityType.orders) == realtime.started_at
        assert sync_state.latest_success_at(db_session, tenant_id, EntityType.shipments) is None

    def test_list_and_purge(self, db_session, tenant_factory):
        acme = tenant_factory(name="Acme")
        globex = tenant_factory(name="Globex")
        sync_state.acquire(db_session, acme.tenant_id, EntityType.orders, SyncTier.realtime)
        sync_state.acquire(db_session, acme.tenant_id, EntityType.products, SyncTier.medium)
        sync_state.acquire(db_session, globex.tenant_id, EntityType.orders, SyncTier.realtime)

        assert len(sync_state.list_states(db_session, acme.tenant_id)) == 2
        assert sync_state.purge_tenant(db_session, acme.tenant_id) == 2
        assert sync_state.list_states(db_session, acme.tenant_id) == []
        assert len(sync_state.list_states(db_session, globex.tenant_id)) == 1
