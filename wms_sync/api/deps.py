import hmac

from fastapi import Header, HTTPException, status

from wms_sync.config import settings


def require_internal_token(x_internal_token: str | None = Header(default=None)):
    """Guard operator routes with the shared internal token when one is configured."""
    expected = settings.internal_api_token
    if not expected:
        return None
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")
    return None


# -------------------------------------------------------------------------
# Container-based Dependencies
# -------------------------------------------------------------------------
# Route handlers resolve services through these so tests can override them.


def get_sync_scheduler():
    """Get the sync scheduler from the container."""
    from wms_sync.container import container

    return container.sync_scheduler()


def get_tenant_directory():
    from wms_sync.container import container

    return container.tenant_directory()


def get_webhook_receiver():
    """Get the webhook receiver from the container."""
    from wms_sync.container import container

    return container.webhook_receiver()


def get_sync_health():
    from wms_sync.container import container

    return container.sync_health()
