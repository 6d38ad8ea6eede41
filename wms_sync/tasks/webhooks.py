import time

from wms_sync.celery_app import celery_app
from wms_sync.config import settings
from wms_sync.container import container
from wms_sync.db import SessionLocal
from wms_sync.logging import get_logger
from wms_sync.metrics import observe_job


@celery_app.task(
    name="wms_sync.tasks.webhooks.retry_deferred_webhooks",
    time_limit=600,
    soft_time_limit=540,
)
def retry_deferred_webhooks(limit: int = 100):
    """Re-drive webhook events left unprocessed by transient failures."""
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger = get_logger(__name__)
    try:
        summary = container.webhook_receiver().retry_pending(
            session, limit=limit, max_attempts=settings.webhook_max_attempts
        )
        if summary["retried"] or summary["abandoned"]:
            logger.info(
                "webhook_retry_complete retried=%d processed=%d deferred=%d abandoned=%d",
                summary["retried"],
                summary["processed"],
                summary["deferred"],
                summary["abandoned"],
            )
        if summary["deferred"] or summary["abandoned"]:
            status = "partial"
        return summary
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("webhook_retry_failed")
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("wms_webhook_retry", status, duration)
