"""Inbound WMS webhook handling."""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wms_sync.config import settings
from wms_sync.db import dialect_insert
from wms_sync.logging import get_logger
from wms_sync.metrics import record_webhook_event
from wms_sync.models.entities import EntityType
from wms_sync.models.webhook_event import WebhookEvent
from wms_sync.services.common import utcnow
from wms_sync.services.errors import (
    AuthenticationError,
    PermanentSourceError,
    SyncTimeoutError,
    TransientSourceError,
)
from wms_sync.services.reconciliation import ReconcileResult, ReconciliationEngine
from wms_sync.services.sources.base import SourceAdapter
from wms_sync.services.tenants import ActiveTenant, TenantDirectory
from wms_sync.telemetry import get_tracer

logger = get_logger(__name__)

EVENT_CATEGORIES = {
    "orders.created": "order",
    "orders.updated": "order",
    "order.created": "order",
    "order.updated": "order",
    "orders.shipped": "shipment",
    "shipments.created": "shipment",
    "shipments.updated": "shipment",
    "shipment.created": "shipment",
    "shipment.updated": "shipment",
    "order.shipment.created": "shipment",
    "orders.cancelled": "cancellation",
    "order.cancelled": "cancellation",
    "inventory.updated": "inventory",
    "inventory.created": "inventory",
    "products.created": "product",
    "products.updated": "product",
    "product.created": "product",
    "product.updated": "product",
    "inbound_shipments.created": "inbound_shipment",
    "inbound_shipments.updated": "inbound_shipment",
    "inbound-shipment.created": "inbound_shipment",
    "inbound-shipment.updated": "inbound_shipment",
    "inbound_shipment.received": "inbound_shipment",
    "connection.historical-sync-completed": "historical_sync_completed",
}

CATEGORY_ENTITY_TYPES = {
    "order": EntityType.orders,
    "shipment": EntityType.shipments,
    "cancellation": EntityType.orders,
    "inventory": EntityType.inventory,
    "product": EntityType.products,
    "inbound_shipment": EntityType.inbound_shipments,
}

# Outcomes that leave the event open for the retry task.
DEFERRED = "deferred"

# Terminal outcomes an operator may replay.
REPLAYABLE_OUTCOMES = ("failed", "abandoned")


@dataclass
class WebhookResult:
    outcome: str
    event_id: str | None = None
    category: str | None = None
    tenant_id: uuid.UUID | None = None

    def as_dict(self) -> dict:
        return {"received": True, "event_id": self.event_id, "outcome": self.outcome}


def _queue_backfill(tenant_id: uuid.UUID) -> None:
    from wms_sync.tasks.sync import run_manual_sync

    run_manual_sync.delay(str(tenant_id), "all", None)


def _outcome_from_result(result: ReconcileResult) -> str:
    if result.error_count:
        return "failed"
    if result.created:
        return "created"
    if result.updated:
        return "updated"
    return "skipped"


class WebhookReceiver:
    """
    Authenticates, deduplicates and applies WMS webhook deliveries.

    Every authenticated delivery is recorded once per (vendor, event_id).
    Record-bearing events go through the same ReconciliationEngine as
    polling, so a webhook and a poll carrying the same record converge.
    Transient or unexpected failures leave the event unprocessed (``deferred``) for
    ``retry_pending``; everything else marks it processed.
    """

    def __init__(
        self,
        adapter: SourceAdapter,
        engine: ReconciliationEngine,
        tenant_directory: TenantDirectory,
        secret: str | None = None,
        skip_signature: bool | None = None,
        backfill_dispatcher: Callable[[uuid.UUID], None] | None = None,
        fetch_timeout: float | None = None,
    ):
        self.adapter = adapter
        self.engine = engine
        self.tenant_directory = tenant_directory
        self.vendor = tenant_directory.vendor
        self.secret = secret if secret is not None else settings.wms_webhook_secret
        self.skip_signature = settings.wms_webhook_skip_signature if skip_signature is None else skip_signature
        self.backfill_dispatcher = backfill_dispatcher or _queue_backfill
        self.fetch_timeout = fetch_timeout or settings.webhook_fetch_timeout_seconds
        self._handlers = {
            "order": self._handle_record,
            "inventory": self._handle_record,
            "product": self._handle_record,
            "inbound_shipment": self._handle_record,
            "shipment": self._handle_shipment,
            "cancellation": self._handle_cancellation,
            "historical_sync_completed": self._handle_historical_sync,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def authenticate(self, raw_body: bytes, signature: str | None) -> None:
        if not self.secret:
            if self.skip_signature:
                logger.warning("webhook_signature_skipped vendor=%s", self.vendor)
                return
            raise AuthenticationError("webhook secret is not configured", code="secret_not_configured")
        if not self.adapter.verify_signature(raw_body, signature, self.secret):
            record_webhook_event("unknown", "invalid_signature")
            raise AuthenticationError()

    def handle(self, db: Session, raw_body: bytes, signature: str | None) -> WebhookResult:
        self.authenticate(raw_body, signature)

        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = None
        if not isinstance(payload, dict):
            event_id = hashlib.sha256(raw_body).hexdigest()
            event = self._record_event(
                db,
                event_id,
                {"raw_text": raw_body.decode("utf-8", errors="replace")},
            )
            if event.processed_at is not None:
                return self._already_processed(event)
            return self._mark_processed(db, event, "malformed", error="body is not a JSON object")

        event_id = str(payload.get("event_id") or payload.get("id") or hashlib.sha256(raw_body).hexdigest())
        event = self._record_event(db, event_id, payload)
        if event.processed_at is not None:
            return self._already_processed(event)
        return self.process_event(db, event)

    def process_event(self, db: Session, event: WebhookEvent) -> WebhookResult:
        with get_tracer().start_as_current_span("wms_sync.webhook") as span:
            span.set_attribute("wms.event_type", event.event_type or "")
            span.set_attribute("wms.connection_id", event.connection_id or "")
            result = self._process_event(db, event)
            span.set_attribute("wms.outcome", result.outcome)
            return result

    def _process_event(self, db: Session, event: WebhookEvent) -> WebhookResult:
        event_pk = event.id
        payload = event.raw_payload or {}
        category = event.event_category
        try:
            tenant = self.tenant_directory.resolve_connection(db, event.connection_id)
            if tenant is None:
                return self._mark_processed(db, event, "unknown_connection")
            event.tenant_id = tenant.tenant_id
            self.tenant_directory.touch(db, tenant.tenant_id, "last_webhook_at")

            handler = self._handlers.get(category or "")
            if handler is None:
                logger.info("webhook_unhandled_event vendor=%s event_type=%s", self.vendor, event.event_type)
                return self._mark_processed(db, event, "unhandled")

            outcome = handler(db, tenant, category, payload.get("data"))
            return self._mark_processed(db, event, outcome)
        except (TransientSourceError, SyncTimeoutError, SQLAlchemyError) as exc:
            db.rollback()
            return self._defer(db, event_pk, exc)
        except Exception as exc:
            db.rollback()
            logger.exception(
                "webhook_handler_failed vendor=%s event_id=%s event_type=%s",
                self.vendor,
                event.event_id,
                event.event_type,
            )
            return self._defer(db, event_pk, exc)

    def retry_pending(self, db: Session, limit: int = 100, max_attempts: int | None = None) -> dict:
        """Re-drive deferred events; give up after ``max_attempts`` tries."""
        max_attempts = max_attempts or settings.webhook_max_attempts
        events = (
            db.execute(
                select(WebhookEvent)
                .where(WebhookEvent.vendor == self.vendor)
                .where(WebhookEvent.processed_at.is_(None))
                .where(WebhookEvent.outcome == DEFERRED)
                .order_by(WebhookEvent.received_at)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        summary = {"retried": 0, "processed": 0, "deferred": 0, "abandoned": 0}
        for event in events:
            if (event.attempts or 0) >= max_attempts:
                self._mark_processed(db, event, "abandoned", error=event.error)
                summary["abandoned"] += 1
                continue
            summary["retried"] += 1
            result = self.process_event(db, event)
            if result.outcome == DEFERRED:
                summary["deferred"] += 1
            else:
                summary["processed"] += 1
        return summary

    def replay_failed(
        self,
        db: Session,
        tenant_id: uuid.UUID | None = None,
        event_ids: list[str] | None = None,
        max_age_hours: int = 24,
        dry_run: bool = False,
        limit: int = 100,
    ) -> dict:
        """Re-run failed or abandoned events received within ``max_age_hours``.

        Each event's attempts, outcome and error are reset before it goes
        back through ``process_event``. With ``dry_run`` nothing is touched
        and the matching events are only listed.
        """
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.vendor == self.vendor)
            .where(WebhookEvent.outcome.in_(REPLAYABLE_OUTCOMES))
            .where(WebhookEvent.received_at >= cutoff)
        )
        if tenant_id is not None:
            stmt = stmt.where(WebhookEvent.tenant_id == tenant_id)
        if event_ids:
            stmt = stmt.where(WebhookEvent.event_id.in_(event_ids))
        events = db.execute(stmt.order_by(WebhookEvent.received_at).limit(limit)).scalars().all()

        if dry_run:
            return {
                "dry_run": True,
                "matched": len(events),
                "events": [
                    {
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "outcome": event.outcome,
                        "attempts": event.attempts,
                        "error": event.error,
                        "received_at": event.received_at,
                    }
                    for event in events
                ],
            }

        outcomes: dict[str, int] = {}
        for event in events:
            event.attempts = 0
            event.outcome = None
            event.error = None
            event.processed_at = None
            db.commit()
            result = self.process_event(db, event)
            outcomes[result.outcome] = outcomes.get(result.outcome, 0) + 1
        logger.info("webhook_replay vendor=%s matched=%s outcomes=%s", self.vendor, len(events), outcomes)
        return {"dry_run": False, "matched": len(events), "outcomes": outcomes}

    # ------------------------------------------------------------------
    # Event bookkeeping
    # ------------------------------------------------------------------

    def _record_event(self, db: Session, event_id: str, payload: dict) -> WebhookEvent:
        event_type = payload.get("event_type") if "raw_text" not in payload else None
        category = EVENT_CATEGORIES.get(str(event_type)) if event_type else None
        connection_id = payload.get("connection_id") if "raw_text" not in payload else None
        stmt = (
            dialect_insert(db, WebhookEvent.__table__)
            .values(
                id=uuid.uuid4(),
                vendor=self.vendor,
                event_id=event_id[:200],
                connection_id=str(connection_id)[:200] if connection_id else None,
                event_type=str(event_type)[:120] if event_type else None,
                event_category=category,
                raw_payload=payload,
                attempts=0,
                received_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["vendor", "event_id"])
        )
        db.execute(stmt)
        db.commit()
        return db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.vendor == self.vendor)
            .where(WebhookEvent.event_id == event_id[:200])
        ).scalar_one()

    def _already_processed(self, event: WebhookEvent) -> WebhookResult:
        record_webhook_event(event.event_category or "unknown", "already_processed")
        logger.info("webhook_duplicate vendor=%s event_id=%s", self.vendor, event.event_id)
        return WebhookResult(
            outcome="already_processed",
            event_id=event.event_id,
            category=event.event_category,
            tenant_id=event.tenant_id,
        )

    def _mark_processed(self, db: Session, event: WebhookEvent, outcome: str, error: str | None = None) -> WebhookResult:
        event.attempts = (event.attempts or 0) + 1
        event.outcome = outcome
        event.error = error
        event.processed_at = utcnow()
        db.commit()
        record_webhook_event(event.event_category or "unknown", outcome)
        logger.info(
            "webhook_processed vendor=%s event_id=%s event_type=%s outcome=%s",
            self.vendor,
            event.event_id,
            event.event_type,
            outcome,
        )
        return WebhookResult(
            outcome=outcome,
            event_id=event.event_id,
            category=event.event_category,
            tenant_id=event.tenant_id,
        )

    def _defer(self, db: Session, event_pk: uuid.UUID, exc: Exception) -> WebhookResult:
        event = db.get(WebhookEvent, event_pk)
        event.attempts = (event.attempts or 0) + 1
        event.outcome = DEFERRED
        event.error = str(exc)[:2000] or exc.__class__.__name__
        db.commit()
        record_webhook_event(event.event_category or "unknown", DEFERRED)
        logger.warning(
            "webhook_deferred vendor=%s event_id=%s attempts=%s error=%s",
            self.vendor,
            event.event_id,
            event.attempts,
            event.error,
        )
        return WebhookResult(
            outcome=DEFERRED,
            event_id=event.event_id,
            category=event.event_category,
            tenant_id=event.tenant_id,
        )

    # ------------------------------------------------------------------
    # Category handlers
    # ------------------------------------------------------------------

    def _reconcile_one(self, db: Session, tenant: ActiveTenant, entity_type: EntityType, records: list) -> str:
        result = self.engine.reconcile(db, tenant.tenant_id, entity_type, records, commit=False)
        return _outcome_from_result(result)

    def _handle_record(self, db: Session, tenant: ActiveTenant, category: str, data) -> str:
        return self._reconcile_one(db, tenant, CATEGORY_ENTITY_TYPES[category], [data])

    def _handle_shipment(self, db: Session, tenant: ActiveTenant, category: str, data) -> str:
        # orders.shipped carries the order with its shipments embedded
        if isinstance(data, dict) and isinstance(data.get("shipments"), list):
            shipments = [
                {"order_id": data.get("id"), **shipment} if isinstance(shipment, dict) else shipment
                for shipment in data["shipments"]
            ]
            if not shipments:
                return "skipped"
            result = self.engine.reconcile(db, tenant.tenant_id, EntityType.shipments, shipments, commit=False)
            return _outcome_from_result(result)
        return self._reconcile_one(db, tenant, EntityType.shipments, [data])

    def _handle_cancellation(self, db: Session, tenant: ActiveTenant, category: str, data) -> str:
        """Re-fetch the cancelled order so the full current record is reconciled."""
        external_id = None
        if isinstance(data, dict):
            external_id = data.get("id") or data.get("order_id")
        if not external_id:
            return self._reconcile_one(db, tenant, EntityType.orders, [data])
        try:
            record = self.adapter.fetch_one(
                tenant,
                EntityType.orders,
                str(external_id),
                deadline=time.monotonic() + self.fetch_timeout,
            )
        except PermanentSourceError as exc:
            logger.warning(
                "webhook_cancellation_fetch_failed tenant_id=%s external_id=%s error=%s",
                tenant.tenant_id,
                external_id,
                exc.detail,
            )
            record = data
        return self._reconcile_one(db, tenant, EntityType.orders, [record])

    def _handle_historical_sync(self, db: Session, tenant: ActiveTenant, category: str, data) -> str:
        self.backfill_dispatcher(tenant.tenant_id)
        logger.info("webhook_backfill_queued tenant_id=%s", tenant.tenant_id)
        return "backfill_queued"
