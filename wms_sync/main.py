from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from wms_sync.api.operations import router as operations_router
from wms_sync.api.sync import router as sync_router
from wms_sync.api.webhooks import router as webhooks_router
from wms_sync.errors import register_error_handlers
from wms_sync.logging import configure_logging
from wms_sync.telemetry import setup_otel

app = FastAPI(title="WMS Sync")

configure_logging()
setup_otel(app)
register_error_handlers(app)

app.include_router(sync_router)
app.include_router(webhooks_router)
app.include_router(operations_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
