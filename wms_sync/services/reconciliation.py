"""Idempotent merge of WMS records into the local entity tables."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy import and_, delete, insert, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from wms_sync.config import settings
from wms_sync.db import dialect_insert
from wms_sync.logging import get_logger
from wms_sync.metrics import record_mapping_gap, record_reconcile
from wms_sync.models.entities import (
    ENTITY_MODELS,
    EntityType,
    InboundShipmentItem,
    OrderLineItem,
    ShipmentTrackingEvent,
)
from wms_sync.services.common import parse_timestamp, payload_hash, utcnow
from wms_sync.services.errors import PermanentSourceError
from wms_sync.services.status_mapping import normalize_status

logger = get_logger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    """Counts for one reconcile batch.

    ``errors`` is capped; ``error_count`` always holds the true total.
    """

    entity_type: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error_count: int = 0
    errors: list[dict] = field(default_factory=list)
    mapping_gaps: list[dict] = field(default_factory=list)
    record_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.skipped + self.error_count

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def add_error(self, external_id: str | None, error: str, max_errors: int) -> None:
        self.error_count += 1
        if len(self.errors) < max_errors:
            self.errors.append({"external_id": external_id, "error": error})

    def as_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.error_count,
            "error_samples": list(self.errors),
            "mapping_gaps": len(self.mapping_gaps),
        }


# ---------------------------------------------------------------------------
# Payload field extraction
# ---------------------------------------------------------------------------


def _float(value) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value) -> int:
    if value is None or value == "" or isinstance(value, bool):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _str(value, limit: int = 200) -> str | None:
    if value is None or value == "":
        return None
    return str(value)[:limit]


def _order_fields(record: dict) -> dict:
    return {
        "order_number": _str(record.get("order_number") or record.get("id"), 120),
        "customer_id": _str(record.get("customer_id")),
        "customer_name": _str(record.get("customer_name")),
        "customer_email": _str(record.get("customer_email"), 255),
        "warehouse_external_id": _str(record.get("warehouse_id")),
        "total": _float(record.get("total", record.get("total_price"))),
        "subtotal": _float(record.get("subtotal")),
    }


def _order_line_items(record: dict) -> list[dict]:
    items = []
    for line in record.get("line_items") or []:
        if not isinstance(line, dict):
            raise PermanentSourceError("order line item is not an object", code="malformed_record")
        items.append(
            {
                "external_line_id": _str(line.get("id")),
                "sku": _str(line.get("sku")),
                "name": _str(line.get("name") or line.get("product_name"), 300),
                "quantity": _int(line.get("quantity")),
                "unit_price": _float(line.get("unit_price", line.get("price"))),
            }
        )
    return items


def _shipment_fields(record: dict) -> dict:
    return {
        "order_external_id": _str(record.get("order_id")),
        "tracking_number": _str(record.get("tracking_number")),
        "carrier": _str(record.get("carrier") or record.get("carrier_name"), 120),
        "service": _str(record.get("service"), 120),
        "shipped_at": parse_timestamp(record.get("shipped_at") or record.get("shipped_date")),
        "delivered_at": parse_timestamp(record.get("delivered_at") or record.get("delivered_date")),
    }


def _shipment_tracking_events(record: dict) -> list[dict]:
    events = []
    for event in record.get("tracking_events") or []:
        if not isinstance(event, dict):
            raise PermanentSourceError("tracking event is not an object", code="malformed_record")
        events.append(
            {
                "status": _str(event.get("status"), 80),
                "description": _str(event.get("description") or event.get("message"), 2000),
                "location": _str(event.get("location")),
                "occurred_at": parse_timestamp(event.get("occurred_at") or event.get("timestamp")),
            }
        )
    return events


def _product_fields(record: dict) -> dict:
    return {
        "sku": _str(record.get("sku") or record.get("id")),
        "name": _str(record.get("name") or record.get("title"), 300),
        "category": _str(record.get("category"), 120),
        "price": _float(record.get("price")),
        "cost": _float(record.get("cost")),
    }


def _inventory_fields(record: dict) -> dict:
    return {
        "product_external_id": _str(record.get("product_id")),
        "sku": _str(record.get("sku")),
        "warehouse_external_id": _str(record.get("warehouse_id") or record.get("location")),
        "quantity_on_hand": _int(record.get("quantity_on_hand", record.get("onhand"))),
        "quantity_fulfillable": _int(record.get("quantity_fulfillable", record.get("fulfillable"))),
    }


def _inventory_status(record: dict) -> str | None:
    if record.get("status") is not None:
        return record.get("status")
    fields = _inventory_fields(record)
    if fields["quantity_fulfillable"] <= 0 and fields["quantity_on_hand"] <= 0:
        return "out_of_stock"
    return None


def _inbound_shipment_fields(record: dict) -> dict:
    return {
        "reference_number": _str(record.get("reference_number")),
        "tracking_number": _str(record.get("tracking_number")),
        "carrier_name": _str(record.get("carrier_name") or record.get("carrier"), 120),
        "warehouse_external_id": _str(record.get("destination_location_id") or record.get("warehouse_id")),
        "expected_at": parse_timestamp(record.get("expected_date")),
        "received_at": parse_timestamp(record.get("received_date")),
    }


def _inbound_shipment_items(record: dict) -> list[dict]:
    items = []
    for line in record.get("line_items") or []:
        if not isinstance(line, dict) or not line.get("sku"):
            raise PermanentSourceError("inbound shipment line item missing sku", code="malformed_record")
        items.append(
            {
                "sku": _str(line.get("sku")),
                "product_name": _str(line.get("product_name") or line.get("name"), 300),
                "expected_quantity": _int(line.get("expected_quantity")),
                "received_quantity": _int(line.get("received_quantity")),
                "unit_cost": _float(line.get("unit_cost")),
            }
        )
    return items


def _warehouse_fields(record: dict) -> dict:
    address = record.get("address") if isinstance(record.get("address"), dict) else {}
    return {
        "name": _str(record.get("name")),
        "code": _str(record.get("code") or record.get("external_id"), 80),
        "city": _str(address.get("city"), 120),
        "country": _str(address.get("country"), 80),
    }


@dataclass(frozen=True)
class _ChildSpec:
    table: object
    parent_column: str
    extract: Callable[[dict], list[dict]]


_FIELD_EXTRACTORS: dict[EntityType, Callable[[dict], dict]] = {
    EntityType.orders: _order_fields,
    EntityType.shipments: _shipment_fields,
    EntityType.products: _product_fields,
    EntityType.inventory: _inventory_fields,
    EntityType.inbound_shipments: _inbound_shipment_fields,
    EntityType.warehouses: _warehouse_fields,
}

_CHILDREN: dict[EntityType, _ChildSpec] = {
    EntityType.orders: _ChildSpec(OrderLineItem.__table__, "order_id", _order_line_items),
    EntityType.shipments: _ChildSpec(ShipmentTrackingEvent.__table__, "shipment_id", _shipment_tracking_events),
    EntityType.inbound_shipments: _ChildSpec(
        InboundShipmentItem.__table__, "inbound_shipment_id", _inbound_shipment_items
    ),
}

_STATUS_READERS: dict[EntityType, Callable[[dict], object]] = {
    EntityType.inventory: _inventory_status,
}

# Columns an applied update must never overwrite.
_IMMUTABLE_COLUMNS = {"id", "tenant_id", "external_id", "created_at", "version"}


def record_external_id(record) -> str | None:
    if not isinstance(record, dict):
        return None
    value = record.get("id", record.get("external_id"))
    if value is None or value == "":
        return None
    return str(value)


class ReconciliationEngine:
    """
    Single write path for WMS entities, shared by polling and webhooks.

    Each record is written with one conditional upsert keyed on
    (tenant_id, external_id):
    - absent: inserted (created)
    - present and the incoming ``updated_at`` is newer than the stored one,
      or neither side has a timestamp and the payload hash changed: updated
    - otherwise: skipped, the stored row is left untouched

    Child collections are replaced as a set whenever the parent write applies.
    Each record runs inside its own savepoint so one bad payload only costs
    that record.
    """

    def __init__(self, max_errors: int | None = None):
        self.max_errors = max_errors if max_errors is not None else settings.reconcile_max_errors

    def reconcile(
        self,
        db: Session,
        tenant_id: uuid.UUID,
        entity_type: EntityType | str,
        raw_records: Iterable[dict],
        commit: bool = True,
    ) -> ReconcileResult:
        entity_type = EntityType(entity_type)
        result = ReconcileResult(entity_type=entity_type.value)

        for raw in raw_records:
            external_id = record_external_id(raw)
            try:
                with db.begin_nested():
                    outcome, local_id = self._apply(db, tenant_id, entity_type, raw, external_id, result)
            except OperationalError:
                raise
            except PermanentSourceError as exc:
                result.add_error(external_id, exc.detail, self.max_errors)
                continue
            except Exception as exc:
                logger.warning(
                    "reconcile_record_failed tenant_id=%s entity_type=%s external_id=%s error=%s",
                    tenant_id,
                    entity_type.value,
                    external_id,
                    exc,
                )
                result.add_error(external_id, str(exc) or exc.__class__.__name__, self.max_errors)
                continue

            if outcome == CREATED:
                result.created += 1
            elif outcome == UPDATED:
                result.updated += 1
            else:
                result.skipped += 1
            if local_id is not None:
                result.record_ids.append(local_id)

        if commit:
            db.commit()

        record_reconcile(entity_type.value, CREATED, result.created)
        record_reconcile(entity_type.value, UPDATED, result.updated)
        record_reconcile(entity_type.value, SKIPPED, result.skipped)
        record_reconcile(entity_type.value, "error", result.error_count)
        logger.info(
            "reconcile_batch tenant_id=%s entity_type=%s created=%s updated=%s skipped=%s errors=%s gaps=%s",
            tenant_id,
            entity_type.value,
            result.created,
            result.updated,
            result.skipped,
            result.error_count,
            len(result.mapping_gaps),
        )
        return result

    def _apply(
        self,
        db: Session,
        tenant_id: uuid.UUID,
        entity_type: EntityType,
        raw: dict,
        external_id: str | None,
        result: ReconcileResult,
    ) -> tuple[str, uuid.UUID | None]:
        if not isinstance(raw, dict):
            raise PermanentSourceError("record is not an object", code="malformed_record")
        if external_id is None:
            raise PermanentSourceError("record has no external id", code="malformed_record")

        status_reader = _STATUS_READERS.get(entity_type)
        vendor_status = status_reader(raw) if status_reader else raw.get("status")
        mapping = normalize_status(entity_type, vendor_status)
        if mapping.gap:
            record_mapping_gap(entity_type.value)
            result.mapping_gaps.append({"external_id": external_id, "vendor_status": mapping.vendor_status})
            logger.warning(
                "reconcile_mapping_gap tenant_id=%s entity_type=%s external_id=%s vendor_status=%s default=%s",
                tenant_id,
                entity_type.value,
                external_id,
                mapping.vendor_status,
                mapping.status,
            )

        child_spec = _CHILDREN.get(entity_type)
        children = child_spec.extract(raw) if child_spec else []

        model = ENTITY_MODELS[entity_type]
        table = model.__table__
        now = utcnow()
        remote_ts = parse_timestamp(raw.get("updated_at") or raw.get("updated_date"))
        values = {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "external_id": external_id,
            "normalized_status": mapping.status,
            "vendor_status": _str(mapping.vendor_status, 80),
            "raw_payload": raw,
            "payload_hash": payload_hash(raw),
            "updated_at_remote": remote_ts,
            "version": 1,
            "synced_at": now,
            "created_at": now,
            **_FIELD_EXTRACTORS[entity_type](raw),
        }

        stmt = dialect_insert(db, table).values(**values)
        excluded = stmt.excluded
        update_values = {key: excluded[key] for key in values if key not in _IMMUTABLE_COLUMNS}
        update_values["version"] = table.c.version + 1
        if remote_ts is not None:
            newer = or_(
                table.c.updated_at_remote.is_(None),
                table.c.updated_at_remote < excluded.updated_at_remote,
            )
        else:
            newer = and_(
                table.c.updated_at_remote.is_(None),
                table.c.payload_hash != excluded.payload_hash,
            )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.tenant_id, table.c.external_id],
            set_=update_values,
            where=newer,
        ).returning(table.c.id, table.c.version)

        row = db.execute(stmt).first()
        if row is None:
            return SKIPPED, None

        local_id, version = row[0], row[1]
        if child_spec is not None:
            parent_column = child_spec.table.c[child_spec.parent_column]
            db.execute(delete(child_spec.table).where(parent_column == local_id))
            if children:
                db.execute(
                    insert(child_spec.table),
                    [{"id": uuid.uuid4(), child_spec.parent_column: local_id, **child} for child in children],
                )
        return (CREATED if version == 1 else UPDATED), local_id


reconciliation_engine = ReconciliationEngine()
