import logging
import os

from opentelemetry import trace

logger = logging.getLogger(__name__)

_TRACER_NAME = "wms_sync"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer.

    Without a configured TracerProvider the API hands back no-op spans,
    so sync code can open spans unconditionally.
    """
    return trace.get_tracer(name or _TRACER_NAME)


def _instrument_fastapi(app) -> None:
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(app)


def _instrument_sqlalchemy(app) -> None:
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    from wms_sync.db import get_engine

    SQLAlchemyInstrumentor().instrument(engine=get_engine())


def _instrument_celery(app) -> None:
    from opentelemetry.instrumentation.celery import CeleryInstrumentor

    CeleryInstrumentor().instrument()


def _instrument_httpx(app) -> None:
    # Outbound WMS calls; the spans carry vendor latency and retries.
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

    HTTPXClientInstrumentor().instrument()


_INSTRUMENTORS = (
    ("FastAPI", _instrument_fastapi, True),
    ("SQLAlchemy", _instrument_sqlalchemy, False),
    ("Celery", _instrument_celery, False),
    ("httpx", _instrument_httpx, False),
)


def setup_otel(app=None) -> None:
    """Configure OpenTelemetry tracing when OTEL_ENABLED is set.

    Called by the API process with its app and by Celery workers without
    one. Instrumentor packages are optional; a missing one is logged and
    skipped.
    """
    enabled = os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}
    if not enabled:
        return

    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logger.exception("OpenTelemetry SDK not available, skipping setup.")
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "wms_sync")
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace.set_tracer_provider(provider)
    exporter = OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces") if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))

    for label, instrument, needs_app in _INSTRUMENTORS:
        if needs_app and app is None:
            continue
        try:
            instrument(app)
            logger.info("OTel: %s instrumented", label)
        except Exception:
            logger.warning("OTel: %s instrumentation unavailable", label, exc_info=True)

    logger.info("OpenTelemetry tracing enabled (service=%s)", service_name)
