from wms_sync.tasks.sync import run_manual_sync, run_sync_tier
from wms_sync.tasks.webhooks import retry_deferred_webhooks

__all__ = [
    "retry_deferred_webhooks",
    "run_manual_sync",
    "run_sync_tier",
]
