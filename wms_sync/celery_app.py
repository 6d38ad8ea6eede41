from celery import Celery
from celery.signals import worker_process_init

from wms_sync.logging import configure_logging
from wms_sync.services.scheduler_config import build_beat_schedule, get_celery_config
from wms_sync.telemetry import setup_otel

configure_logging()

celery_app = Celery("wms_sync")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.conf.include = ["wms_sync.tasks"]


@worker_process_init.connect
def _init_worker_tracing(**kwargs):
    # Providers are per process; prefork children need their own.
    setup_otel()
