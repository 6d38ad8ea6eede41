import uuid

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import wms_sync.models  # noqa: F401
from wms_sync.db import Base
from wms_sync.models.tenant import Tenant, TenantIntegration
from wms_sync.services.tenants import TenantDirectory


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def tenant_directory():
    return TenantDirectory(vendor="generic")


@pytest.fixture()
def tenant_factory(db_session, tenant_directory):
    """Create a tenant with a WMS integration and return its ActiveTenant view."""

    def _create(name="Acme", connection_id=None, vendor="generic", is_active=True, integration_active=True):
        tenant = Tenant(name=name, is_active=is_active)
        db_session.add(tenant)
        db_session.flush()
        db_session.add(
            TenantIntegration(
                tenant_id=tenant.id,
                vendor=vendor,
                connection_id=connection_id or f"conn-{uuid.uuid4().hex[:8]}",
                access_token="tenant-token",
                is_active=integration_active,
            )
        )
        db_session.commit()
        tenant_id = tenant.id
        active = tenant_directory.get_active_tenant(db_session, tenant_id)
        db_session.commit()
        return active

    return _create


@pytest.fixture()
def active_tenant(tenant_factory):
    return tenant_factory(name="Acme", connection_id="conn-acme")
