"""Read-only view of the platform's tenants and their WMS connections."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from wms_sync.config import settings
from wms_sync.logging import get_logger
from wms_sync.models.tenant import Tenant, TenantIntegration
from wms_sync.services.common import coerce_uuid, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class SourceCredentials:
    vendor: str
    connection_id: str
    access_token: str | None = None
    base_url: str | None = None


@dataclass(frozen=True)
class ActiveTenant:
    tenant_id: uuid.UUID
    credentials: SourceCredentials
    name: str | None = None


def _to_active_tenant(tenant: Tenant, integration: TenantIntegration) -> ActiveTenant:
    return ActiveTenant(
        tenant_id=tenant.id,
        name=tenant.name,
        credentials=SourceCredentials(
            vendor=integration.vendor,
            connection_id=integration.connection_id,
            access_token=integration.access_token,
            base_url=integration.base_url,
        ),
    )


class TenantDirectory:
    """Resolves tenants that have an active WMS integration.

    Tenant rows are owned elsewhere; nothing here writes to ``tenants``.
    """

    def __init__(self, vendor: str | None = None):
        self.vendor = vendor or settings.wms_default_vendor

    def _base_query(self):
        return (
            select(Tenant, TenantIntegration)
            .join(TenantIntegration, TenantIntegration.tenant_id == Tenant.id)
            .where(Tenant.is_active.is_(True))
            .where(TenantIntegration.is_active.is_(True))
            .where(TenantIntegration.vendor == self.vendor)
        )

    def list_active_tenants(self, db: Session) -> list[ActiveTenant]:
        rows = db.execute(self._base_query().order_by(Tenant.created_at, Tenant.id)).all()
        return [_to_active_tenant(tenant, integration) for tenant, integration in rows]

    def get_active_tenant(self, db: Session, tenant_id) -> ActiveTenant | None:
        try:
            tenant_uuid = coerce_uuid(tenant_id)
        except ValueError:
            return None
        row = db.execute(self._base_query().where(Tenant.id == tenant_uuid)).first()
        if not row:
            return None
        return _to_active_tenant(row[0], row[1])

    def resolve_connection(self, db: Session, connection_id: str | None) -> ActiveTenant | None:
        if not connection_id:
            return None
        row = db.execute(self._base_query().where(TenantIntegration.connection_id == connection_id)).first()
        if not row:
            logger.warning("tenant_connection_unknown vendor=%s connection_id=%s", self.vendor, connection_id)
            return None
        return _to_active_tenant(row[0], row[1])

    def touch(self, db: Session, tenant_id, field: str) -> None:
        """Stamp ``last_synced_at`` or ``last_webhook_at`` on the integration row."""
        if field not in {"last_synced_at", "last_webhook_at"}:
            raise ValueError(f"Unsupported integration timestamp: {field}")
        integration = db.execute(
            select(TenantIntegration)
            .where(TenantIntegration.tenant_id == coerce_uuid(tenant_id))
            .where(TenantIntegration.vendor == self.vendor)
        ).scalar_one_or_none()
        if integration is not None:
            setattr(integration, field, utcnow())
