"""Durable per tenant/entity/tier sync bookkeeping."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from wms_sync.db import dialect_insert
from wms_sync.logging import get_logger
from wms_sync.models.entities import EntityType
from wms_sync.models.sync_state import SyncState, SyncStatus, SyncTier
from wms_sync.services.common import as_utc, coerce_uuid, utcnow

logger = get_logger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=1)


@dataclass(frozen=True)
class RunLease:
    """Proof that a caller moved a SyncState to ``running``."""

    tenant_id: uuid.UUID
    entity_type: EntityType
    tier: SyncTier
    run_id: str
    started_at: datetime
    previous_last_sync_at: datetime | None


def _key_filter(stmt, tenant_id, entity_type: EntityType, tier: SyncTier):
    return (
        stmt.where(SyncState.tenant_id == tenant_id)
        .where(SyncState.entity_type == entity_type)
        .where(SyncState.tier == tier)
    )


def ensure_state(db: Session, tenant_id, entity_type: EntityType, tier: SyncTier) -> None:
    """Create the idle row for this key if it does not exist yet."""
    now = utcnow()
    stmt = (
        dialect_insert(db, SyncState.__table__)
        .values(
            id=uuid.uuid4(),
            tenant_id=coerce_uuid(tenant_id),
            entity_type=entity_type,
            tier=tier,
            status=SyncStatus.idle,
            records_processed=0,
            error_count=0,
            possible_truncation=False,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "entity_type", "tier"])
    )
    db.execute(stmt)


def get_state(db: Session, tenant_id, entity_type: EntityType, tier: SyncTier) -> SyncState | None:
    stmt = _key_filter(select(SyncState), coerce_uuid(tenant_id), entity_type, tier)
    return db.execute(stmt).scalar_one_or_none()


def list_states(db: Session, tenant_id) -> list[SyncState]:
    stmt = (
        select(SyncState)
        .where(SyncState.tenant_id == coerce_uuid(tenant_id))
        .order_by(SyncState.entity_type, SyncState.tier)
    )
    return list(db.execute(stmt).scalars().all())


def is_due(state: SyncState | None, now: datetime | None = None) -> bool:
    if state is None or state.next_scheduled_at is None:
        return True
    return as_utc(state.next_scheduled_at) <= (now or utcnow())


def latest_success_at(db: Session, tenant_id, entity_type: EntityType) -> datetime | None:
    """Most recent ``last_sync_at`` for an entity type across all tiers."""
    value = db.execute(
        select(func.max(SyncState.last_sync_at))
        .where(SyncState.tenant_id == coerce_uuid(tenant_id))
        .where(SyncState.entity_type == entity_type)
    ).scalar()
    return as_utc(value)


def acquire(
    db: Session,
    tenant_id,
    entity_type: EntityType,
    tier: SyncTier,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> RunLease | None:
    """Move the state to ``running`` unless another run holds it.

    A ``running`` row older than ``stale_after`` is taken over. Returns None
    when the key is busy; the caller skips, it never queues. Commits.
    """
    tenant_id = coerce_uuid(tenant_id)
    ensure_state(db, tenant_id, entity_type, tier)
    now = utcnow()
    run_id = uuid.uuid4().hex
    stale_cutoff = now - stale_after
    stmt = (
        _key_filter(update(SyncState), tenant_id, entity_type, tier)
        .where(
            or_(
                SyncState.status != SyncStatus.running,
                SyncState.started_at.is_(None),
                SyncState.started_at < stale_cutoff,
            )
        )
        .values(
            status=SyncStatus.running,
            run_id=run_id,
            started_at=now,
            finished_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).rowcount
    if not claimed:
        db.commit()
        logger.info(
            "sync_state_busy tenant_id=%s entity_type=%s tier=%s",
            tenant_id,
            entity_type.value,
            tier.value,
        )
        return None

    previous = db.execute(
        _key_filter(select(SyncState.last_sync_at), tenant_id, entity_type, tier)
    ).scalar()
    db.commit()
    return RunLease(
        tenant_id=tenant_id,
        entity_type=entity_type,
        tier=tier,
        run_id=run_id,
        started_at=now,
        previous_last_sync_at=as_utc(previous),
    )


def finish(
    db: Session,
    lease: RunLease,
    status: SyncStatus,
    next_scheduled_at: datetime | None,
    records_processed: int = 0,
    error_count: int = 0,
    error_detail: dict | None = None,
    possible_truncation: bool = False,
) -> bool:
    """Record the outcome of a run.

    Only applies while the row still carries ``lease.run_id``, so a run that
    was timed out or taken over cannot overwrite the newer outcome. On
    success or partial, ``last_sync_at`` becomes the run's start time.
    Commits. Returns whether the row was updated.
    """
    if status not in {SyncStatus.success, SyncStatus.partial, SyncStatus.error}:
        raise ValueError(f"Not a terminal sync status: {status}")
    now = utcnow()
    values = {
        "status": status,
        "run_id": None,
        "finished_at": now,
        "records_processed": records_processed,
        "error_count": error_count,
        "error_detail": error_detail,
        "possible_truncation": possible_truncation,
        "next_scheduled_at": next_scheduled_at,
        "updated_at": now,
    }
    if status in {SyncStatus.success, SyncStatus.partial}:
        values["last_sync_at"] = lease.started_at
    stmt = (
        _key_filter(update(SyncState), lease.tenant_id, lease.entity_type, lease.tier)
        .where(SyncState.run_id == lease.run_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    applied = bool(db.execute(stmt).rowcount)
    db.commit()
    if not applied:
        logger.warning(
            "sync_state_finish_ignored tenant_id=%s entity_type=%s tier=%s run_id=%s status=%s",
            lease.tenant_id,
            lease.entity_type.value,
            lease.tier.value,
            lease.run_id,
            status.value,
        )
    return applied


def mark_timed_out(db: Session, lease: RunLease, next_scheduled_at: datetime | None, detail: str) -> bool:
    return finish(
        db,
        lease,
        SyncStatus.error,
        next_scheduled_at,
        error_count=1,
        error_detail={"code": "timeout", "detail": detail},
    )


def purge_tenant(db: Session, tenant_id) -> int:
    """Drop every SyncState row of an offboarded tenant."""
    deleted = db.execute(
        delete(SyncState)
        .where(SyncState.tenant_id == coerce_uuid(tenant_id))
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    logger.info("sync_state_purged tenant_id=%s rows=%s", tenant_id, deleted)
    return deleted
