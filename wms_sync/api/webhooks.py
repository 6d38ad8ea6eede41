from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from wms_sync.api.deps import get_webhook_receiver
from wms_sync.config import settings
from wms_sync.db import get_db
from wms_sync.schemas.sync import WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/wms", response_model=WebhookAck)
async def receive_wms_webhook(
    request: Request,
    db: Session = Depends(get_db),
    receiver=Depends(get_webhook_receiver),
):
    """Accept a WMS event.

    Any authenticated delivery gets a 200, including deferred ones, so the
    vendor does not hammer us with redeliveries; a bad signature is a 401.
    """
    raw_body = await request.body()
    signature = request.headers.get(settings.wms_webhook_signature_header)
    result = await run_in_threadpool(receiver.handle, db, raw_body, signature)
    return result.as_dict()
