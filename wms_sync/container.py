"""Dependency injection container.

Builds the process-wide sync collaborators once: the source adapter, tenant
directory, reconciliation engine, scheduler, webhook receiver and health view.

Usage:
    from wms_sync.container import container

    scheduler = container.sync_scheduler()

    # In tests
    with container.source_adapter.override(FakeAdapter()):
        ...
"""

from __future__ import annotations

from dependency_injector import containers, providers  # type: ignore[import-not-found]

from wms_sync.config import settings


def _session_factory():
    from wms_sync.db import SessionLocal

    return SessionLocal


def _source_adapter(vendor: str):
    from wms_sync.services.sources import get_source_adapter

    return get_source_adapter(vendor)


def _tenant_directory(vendor: str):
    from wms_sync.services.tenants import TenantDirectory

    return TenantDirectory(vendor=vendor)


def _reconciliation_engine():
    from wms_sync.services.reconciliation import reconciliation_engine

    return reconciliation_engine


def _sync_scheduler(session_factory, adapter, tenant_directory, engine):
    from wms_sync.services.scheduler import SyncScheduler

    return SyncScheduler(
        session_factory=session_factory,
        adapter=adapter,
        tenant_directory=tenant_directory,
        engine=engine,
    )


def _webhook_receiver(adapter, engine, tenant_directory):
    from wms_sync.services.webhooks import WebhookReceiver

    return WebhookReceiver(adapter=adapter, engine=engine, tenant_directory=tenant_directory)


def _sync_health(tenant_directory, adapter):
    from wms_sync.services.sync_health import SyncHealthService

    return SyncHealthService(tenant_directory=tenant_directory, adapter=adapter)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    Everything is a Singleton: the scheduler keeps in-flight manual run
    flags and the adapter keeps pooled HTTP clients and circuit state.
    """

    config = providers.Configuration()

    db_session_factory = providers.Singleton(_session_factory)

    source_adapter = providers.Singleton(_source_adapter, vendor=settings.wms_default_vendor)
    tenant_directory = providers.Singleton(_tenant_directory, vendor=settings.wms_default_vendor)
    reconciliation_engine = providers.Singleton(_reconciliation_engine)

    sync_scheduler = providers.Singleton(
        _sync_scheduler,
        session_factory=db_session_factory,
        adapter=source_adapter,
        tenant_directory=tenant_directory,
        engine=reconciliation_engine,
    )
    webhook_receiver = providers.Singleton(
        _webhook_receiver,
        adapter=source_adapter,
        engine=reconciliation_engine,
        tenant_directory=tenant_directory,
    )
    sync_health = providers.Singleton(
        _sync_health,
        tenant_directory=tenant_directory,
        adapter=source_adapter,
    )


# Global container instance
container = Container()


def get_container() -> Container:
    """Get the global container instance."""
    return container
