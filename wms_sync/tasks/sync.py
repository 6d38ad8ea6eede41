import time

from wms_sync.celery_app import celery_app
from wms_sync.container import container
from wms_sync.db import SessionLocal
from wms_sync.logging import get_logger
from wms_sync.metrics import observe_job
from wms_sync.services.errors import SyncAlreadyRunningError
from wms_sync.services.scheduler import resolve_entity_types, summarize_outcomes
from wms_sync.services.scheduler_config import TIER_TASK_SOFT_TIME_LIMIT, TIER_TASK_TIME_LIMIT


@celery_app.task(
    name="wms_sync.tasks.sync.run_sync_tier",
    time_limit=TIER_TASK_TIME_LIMIT,
    soft_time_limit=TIER_TASK_SOFT_TIME_LIMIT,
)
def run_sync_tier(tier: str):
    """
    Run one polling tier across all active tenants.

    Fired by beat at the tier's tick; SyncState decides which tenant/entity
    pairs are actually due.
    """
    start = time.monotonic()
    status = "success"
    logger = get_logger(__name__)
    logger.info("WMS_SYNC_TIER_START tier=%s", tier)
    try:
        result = container.sync_scheduler().run_tier(tier)
        summary = result.as_dict()
        logger.info(
            "WMS_SYNC_TIER_COMPLETE tier=%s tenants=%d success=%d partial=%d error=%d timeout=%d skipped=%d "
            "deferred_tenants=%d duration=%.2fs",
            tier,
            summary["tenants"],
            summary["success"],
            summary["partial"],
            summary["error"],
            summary["timeout"],
            summary["skipped"],
            summary["deferred_tenants"],
            result.duration_seconds,
        )
        if result.has_errors or summary["partial"] or summary["deferred_tenants"]:
            status = "partial"
        return summary
    except Exception:
        status = "error"
        logger.exception("WMS_SYNC_TIER_FAILED tier=%s", tier)
        raise
    finally:
        duration = time.monotonic() - start
        observe_job(f"wms_sync_tier_{tier}", status, duration)


@celery_app.task(
    name="wms_sync.tasks.sync.run_manual_sync",
    time_limit=1800,
    soft_time_limit=1740,
)
def run_manual_sync(tenant_id: str, entity_type: str = "all", lookback_days: int | None = None):
    """Backfill one tenant outside the polling cadence."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger = get_logger(__name__)
    logger.info(
        "WMS_MANUAL_SYNC_START tenant_id=%s entity_type=%s lookback_days=%s",
        tenant_id,
        entity_type,
        lookback_days,
    )
    try:
        tenant = container.tenant_directory().get_active_tenant(session, tenant_id)
        if tenant is None:
            status = "skipped"
            logger.warning("WMS_MANUAL_SYNC_SKIPPED tenant_id=%s reason=tenant_not_active", tenant_id)
            return {"status": "tenant_not_found"}
        try:
            outcomes = container.sync_scheduler().run_manual(
                session, tenant, resolve_entity_types(entity_type), lookback_days
            )
        except SyncAlreadyRunningError:
            status = "skipped"
            logger.info("WMS_MANUAL_SYNC_SKIPPED tenant_id=%s reason=already_running", tenant_id)
            return {"status": "already_running"}
        summary = summarize_outcomes(outcomes)
        if summary["errors"]:
            status = "partial"
        logger.info(
            "WMS_MANUAL_SYNC_COMPLETE tenant_id=%s created=%d updated=%d skipped=%d errors=%d",
            tenant_id,
            summary["created"],
            summary["updated"],
            summary["skipped"],
            summary["errors"],
        )
        return summary
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("WMS_MANUAL_SYNC_FAILED tenant_id=%s", tenant_id)
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("wms_manual_sync", status, duration)
