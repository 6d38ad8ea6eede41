from wms_sync.models.entities import (  # noqa: F401
    ENTITY_MODELS,
    EntityType,
    InboundShipment,
    InboundShipmentItem,
    InventoryItem,
    Order,
    OrderLineItem,
    Product,
    Shipment,
    ShipmentTrackingEvent,
    Warehouse,
)
from wms_sync.models.sync_state import SyncState, SyncStatus, SyncTier  # noqa: F401
from wms_sync.models.tenant import Tenant, TenantIntegration  # noqa: F401
from wms_sync.models.webhook_event import WebhookEvent  # noqa: F401
