from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from wms_sync.api.deps import (
    get_sync_health,
    get_tenant_directory,
    get_webhook_receiver,
    require_internal_token,
)
from wms_sync.db import get_db
from wms_sync.logging import get_logger
from wms_sync.schemas.sync import ReplayRequest, ReplayResponse, SyncHealthResponse, TenantLagResponse
from wms_sync.services.errors import TenantNotFoundError

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync-operations"], dependencies=[Depends(require_internal_token)])


@router.get("/health", response_model=SyncHealthResponse)
def get_sync_health_overview(db: Session = Depends(get_db), health=Depends(get_sync_health)):
    return health.overview(db)


@router.get("/lag/{tenant_id}", response_model=TenantLagResponse)
def get_tenant_lag(
    tenant_id: str,
    db: Session = Depends(get_db),
    health=Depends(get_sync_health),
    tenant_directory=Depends(get_tenant_directory),
):
    tenant = tenant_directory.get_active_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found or has no active WMS integration")
    return health.tenant_lag(db, tenant)


@router.post("/replay", response_model=ReplayResponse)
def replay(
    payload: ReplayRequest,
    db: Session = Depends(get_db),
    receiver=Depends(get_webhook_receiver),
    tenant_directory=Depends(get_tenant_directory),
):
    """Replay failed webhook events, or queue a fresh manual sync per tenant."""
    if payload.tenant_id is not None:
        tenant = tenant_directory.get_active_tenant(db, str(payload.tenant_id))
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {payload.tenant_id} not found or has no active WMS integration")
        tenants = [tenant]
    else:
        tenants = None

    if payload.type == "sync":
        tenants = tenants if tenants is not None else tenant_directory.list_active_tenants(db)
        if not payload.dry_run:
            for tenant in tenants:
                receiver.backfill_dispatcher(tenant.tenant_id)
        logger.info("sync_replay_requested tenants=%s dry_run=%s", len(tenants), payload.dry_run)
        return {
            "type": "sync",
            "dry_run": payload.dry_run,
            "matched": len(tenants),
            "queued_tenants": [] if payload.dry_run else [tenant.tenant_id for tenant in tenants],
        }

    result = receiver.replay_failed(
        db,
        tenant_id=payload.tenant_id,
        event_ids=payload.event_ids,
        max_age_hours=payload.max_age_hours,
        dry_run=payload.dry_run,
    )
    return {"type": "webhook", **result}
