"""Vendor status normalization tables."""

from __future__ import annotations

from dataclasses import dataclass

from wms_sync.models.entities import EntityType


@dataclass(frozen=True)
class StatusMapping:
    status: str
    vendor_status: str | None
    gap: bool = False


_DEFAULTS = {
    EntityType.orders: "pending",
    EntityType.shipments: "pending",
    EntityType.products: "active",
    EntityType.inventory: "available",
    EntityType.inbound_shipments: "pending",
    EntityType.warehouses: "active",
}

_STATUS_MAPS: dict[EntityType, dict[str, str]] = {
    EntityType.orders: {
        "pending": "pending",
        "open": "pending",
        "new": "pending",
        "processing": "processing",
        "in_progress": "processing",
        "picking": "processing",
        "packed": "processing",
        "fulfilled": "fulfilled",
        "shipped": "shipped",
        "partially_shipped": "shipped",
        "delivered": "delivered",
        "cancelled": "cancelled",
        "canceled": "cancelled",
        "returned": "returned",
        "on_hold": "on_hold",
        "hold": "on_hold",
        "backordered": "on_hold",
        "unfulfilled": "unfulfilled",
    },
    EntityType.shipments: {
        "pending": "pending",
        "label_created": "label_created",
        "label_printed": "label_created",
        "shipped": "shipped",
        "in_transit": "in_transit",
        "out_for_delivery": "out_for_delivery",
        "delivered": "delivered",
        "exception": "exception",
        "failed_attempt": "exception",
        "returned": "returned",
        "return_to_sender": "returned",
        "cancelled": "cancelled",
        "canceled": "cancelled",
        "voided": "cancelled",
    },
    EntityType.products: {
        "active": "active",
        "enabled": "active",
        "inactive": "inactive",
        "disabled": "inactive",
        "archived": "discontinued",
        "discontinued": "discontinued",
    },
    EntityType.inventory: {
        "available": "available",
        "in_stock": "available",
        "low_stock": "low_stock",
        "out_of_stock": "out_of_stock",
        "unavailable": "out_of_stock",
    },
    EntityType.inbound_shipments: {
        "pending": "pending",
        "draft": "pending",
        "open": "pending",
        "in_transit": "in_transit",
        "shipped": "in_transit",
        "arrived": "arrived",
        "receiving": "receiving",
        "partially_received": "receiving",
        "received": "received",
        "completed": "received",
        "closed": "received",
        "cancelled": "cancelled",
        "canceled": "cancelled",
    },
    EntityType.warehouses: {
        "active": "active",
        "inactive": "inactive",
        "disabled": "inactive",
    },
}


def normalized_statuses(entity_type: EntityType) -> set[str]:
    return set(_STATUS_MAPS[entity_type].values()) | {_DEFAULTS[entity_type]}


def default_status(entity_type: EntityType) -> str:
    return _DEFAULTS[entity_type]


def normalize_status(entity_type: EntityType, vendor_status) -> StatusMapping:
    """Map a vendor status onto the local closed set.

    A missing status falls back to the default silently; a present but
    unknown status also falls back and is flagged as a mapping gap.
    """
    default = _DEFAULTS[entity_type]
    if vendor_status is None or str(vendor_status).strip() == "":
        return StatusMapping(status=default, vendor_status=None)
    raw = str(vendor_status).strip()
    key = raw.lower().replace("-", "_").replace(" ", "_")
    mapped = _STATUS_MAPS[entity_type].get(key)
    if mapped is None:
        return StatusMapping(status=default, vendor_status=raw, gap=True)
    return StatusMapping(status=mapped, vendor_status=raw)
