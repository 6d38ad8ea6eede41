from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wms_sync.logging import get_logger
from wms_sync.services.errors import SyncError

logger = get_logger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SyncError)
    async def _sync_error_handler(request: Request, exc: SyncError):
        if exc.status_code >= 500:
            logger.warning("sync_error path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_detail())
