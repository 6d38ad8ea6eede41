import logging
import os
from dataclasses import dataclass
from datetime import timedelta

from wms_sync.models.entities import EntityType
from wms_sync.models.sync_state import SyncTier

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str) -> bool | None:
    raw = _env_value(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return None


def _effective_int(env_key: str, default: int, minimum: int = 0) -> int:
    value = _env_int(env_key)
    if value is None:
        return default
    return max(value, minimum)


def _effective_bool(env_key: str, default: bool) -> bool:
    value = _env_bool(env_key)
    return default if value is None else value


# Celery limits for run_sync_tier; the tier budget stays under the soft limit.
TIER_TASK_TIME_LIMIT = 1800
TIER_TASK_SOFT_TIME_LIMIT = 1740


@dataclass(frozen=True)
class TierConfig:
    """Cadence and fetch window for one sync tier.

    ``window`` bounds how far back an incremental pull reaches when the last
    success is older than that; ``fixed_lookback`` ignores ``last_sync_at``
    entirely; a tier with neither pulls everything.
    """

    tier: SyncTier
    entity_types: tuple[EntityType, ...]
    cadence: timedelta
    retry_after_error: timedelta
    window: timedelta | None = None
    fixed_lookback: timedelta | None = None
    enabled: bool = True

    @property
    def tick(self) -> timedelta:
        return min(self.cadence, self.retry_after_error)


@dataclass(frozen=True)
class SchedulerSettings:
    concurrency: int
    inter_tenant_delay: float
    tenant_timeout: float
    stale_run_after: timedelta
    jitter_seconds: int
    window_overlap: timedelta
    manual_default_lookback: timedelta
    tier_budget: float = 1500.0


_TIER_DEFAULTS = {
    # tier: (entity types, cadence, retry, window, fixed lookback) in seconds
    SyncTier.realtime: (
        (EntityType.orders, EntityType.shipments),
        5 * 60,
        2 * 60,
        30 * 60,
        None,
    ),
    SyncTier.medium: (
        (EntityType.products, EntityType.inventory, EntityType.inbound_shipments),
        30 * 60,
        10 * 60,
        2 * 60 * 60,
        None,
    ),
    SyncTier.low: (
        (EntityType.warehouses,),
        2 * 60 * 60,
        30 * 60,
        None,
        None,
    ),
    SyncTier.full: (
        tuple(EntityType),
        24 * 60 * 60,
        4 * 60 * 60,
        None,
        30 * 24 * 60 * 60,
    ),
}


def get_tier_config(tier: SyncTier) -> TierConfig:
    entity_types, cadence, retry, window, lookback = _TIER_DEFAULTS[tier]
    prefix = f"SYNC_{tier.value.upper()}"
    cadence = _effective_int(f"{prefix}_CADENCE_SECONDS", cadence, minimum=60)
    retry = _effective_int(f"{prefix}_RETRY_SECONDS", retry, minimum=30)
    if window is not None:
        window = _effective_int(f"{prefix}_WINDOW_SECONDS", window, minimum=60)
    if lookback is not None:
        lookback = _effective_int(f"{prefix}_LOOKBACK_SECONDS", lookback, minimum=60)
    return TierConfig(
        tier=tier,
        entity_types=entity_types,
        cadence=timedelta(seconds=cadence),
        retry_after_error=timedelta(seconds=retry),
        window=timedelta(seconds=window) if window is not None else None,
        fixed_lookback=timedelta(seconds=lookback) if lookback is not None else None,
        enabled=_effective_bool(f"{prefix}_ENABLED", True),
    )


def get_tier_configs() -> dict[SyncTier, TierConfig]:
    return {tier: get_tier_config(tier) for tier in _TIER_DEFAULTS}


def get_scheduler_settings() -> SchedulerSettings:
    concurrency = _effective_int("SYNC_TIER_CONCURRENCY", 1, minimum=1)
    return SchedulerSettings(
        concurrency=min(concurrency, 4),
        inter_tenant_delay=float(_effective_int("SYNC_INTER_TENANT_DELAY_SECONDS", 2)),
        tenant_timeout=float(_effective_int("SYNC_TENANT_TIMEOUT_SECONDS", 300, minimum=1)),
        stale_run_after=timedelta(seconds=_effective_int("SYNC_STALE_RUN_SECONDS", 3600, minimum=60)),
        jitter_seconds=_effective_int("SYNC_JITTER_SECONDS", 30),
        window_overlap=timedelta(seconds=_effective_int("SYNC_WINDOW_OVERLAP_SECONDS", 120)),
        manual_default_lookback=timedelta(hours=_effective_int("SYNC_MANUAL_DEFAULT_LOOKBACK_HOURS", 24, minimum=1)),
        tier_budget=float(
            min(
                _effective_int("SYNC_TIER_BUDGET_SECONDS", 1500, minimum=60),
                TIER_TASK_SOFT_TIME_LIMIT - 60,
            )
        ),
    )


def get_celery_config() -> dict:
    broker = _env_value("CELERY_BROKER_URL") or _env_value("REDIS_URL") or "redis://localhost:6379/0"
    backend = _env_value("CELERY_RESULT_BACKEND") or _env_value("REDIS_URL") or "redis://localhost:6379/1"
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "beat_max_loop_interval": _effective_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5, minimum=1),
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    for tier, config in get_tier_configs().items():
        if not config.enabled:
            logger.info("WMS_SYNC_TIER_DISABLED tier=%s", tier.value)
            continue
        schedule[f"wms_sync_{tier.value}"] = {
            "task": "wms_sync.tasks.sync.run_sync_tier",
            "schedule": config.tick,
            "args": [tier.value],
        }

    if _effective_bool("WEBHOOK_RETRY_ENABLED", True):
        interval = _effective_int("WEBHOOK_RETRY_INTERVAL_SECONDS", 120, minimum=30)
        schedule["wms_webhook_retry"] = {
            "task": "wms_sync.tasks.webhooks.retry_deferred_webhooks",
            "schedule": timedelta(seconds=interval),
        }
    return schedule
