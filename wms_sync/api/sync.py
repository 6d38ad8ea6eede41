from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from wms_sync.api.deps import get_sync_scheduler, get_tenant_directory, require_internal_token
from wms_sync.db import get_db
from wms_sync.schemas.sync import ManualSyncRequest, ManualSyncResponse, SyncStateRead
from wms_sync.services import sync_state
from wms_sync.services.errors import TenantNotFoundError
from wms_sync.services.scheduler import resolve_entity_types, summarize_outcomes

router = APIRouter(prefix="/tenants", tags=["sync"], dependencies=[Depends(require_internal_token)])


@router.post("/{tenant_id}/sync", response_model=ManualSyncResponse)
def trigger_sync(
    tenant_id: str,
    payload: ManualSyncRequest,
    db: Session = Depends(get_db),
    scheduler=Depends(get_sync_scheduler),
    tenant_directory=Depends(get_tenant_directory),
):
    tenant = tenant_directory.get_active_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found or has no active WMS integration")
    outcomes = scheduler.run_manual(
        db,
        tenant,
        resolve_entity_types(payload.entity_type),
        payload.lookback_days,
    )
    return summarize_outcomes(outcomes)


@router.get("/{tenant_id}/sync-status", response_model=list[SyncStateRead])
def get_sync_status(
    tenant_id: str,
    db: Session = Depends(get_db),
    tenant_directory=Depends(get_tenant_directory),
):
    tenant = tenant_directory.get_active_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} not found or has no active WMS integration")
    return sync_state.list_states(db, tenant.tenant_id)
