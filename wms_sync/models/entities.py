import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from wms_sync.db import Base


class EntityType(enum.Enum):
    orders = "orders"
    shipments = "shipments"
    products = "products"
    inventory = "inventory"
    inbound_shipments = "inbound_shipments"
    warehouses = "warehouses"


class ExternalRecordMixin:
    """Columns shared by every locally mirrored WMS entity.

    ``version`` starts at 1 on insert and is bumped by each applied update, so
    a RETURNING of the version tells an upsert caller whether it created or
    updated the row.
    """

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint(
                "tenant_id",
                "external_id",
                name=f"uq_{cls.__tablename__}_tenant_external",
            ),
        )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    normalized_status: Mapped[str] = mapped_column(String(40), nullable=False)
    vendor_status: Mapped[str | None] = mapped_column(String(80))
    raw_payload: Mapped[dict | None] = mapped_column(JSON)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at_remote: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class Order(ExternalRecordMixin, Base):
    __tablename__ = "orders"

    order_number: Mapped[str | None] = mapped_column(String(120))
    customer_id: Mapped[str | None] = mapped_column(String(200))
    customer_name: Mapped[str | None] = mapped_column(String(200))
    customer_email: Mapped[str | None] = mapped_column(String(255))
    warehouse_external_id: Mapped[str | None] = mapped_column(String(200))
    total: Mapped[float | None] = mapped_column(Float)
    subtotal: Mapped[float | None] = mapped_column(Float)

    line_items = relationship(
        "OrderLineItem", back_populates="order", cascade="all, delete-orphan", passive_deletes=True
    )


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_line_id: Mapped[str | None] = mapped_column(String(200))
    sku: Mapped[str | None] = mapped_column(String(200))
    name: Mapped[str | None] = mapped_column(String(300))
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    unit_price: Mapped[float | None] = mapped_column(Float)

    order = relationship("Order", back_populates="line_items")


class Shipment(ExternalRecordMixin, Base):
    __tablename__ = "shipments"

    order_external_id: Mapped[str | None] = mapped_column(String(200), index=True)
    tracking_number: Mapped[str | None] = mapped_column(String(200))
    carrier: Mapped[str | None] = mapped_column(String(120))
    service: Mapped[str | None] = mapped_column(String(120))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    tracking_events = relationship(
        "ShipmentTrackingEvent", back_populates="shipment", cascade="all, delete-orphan", passive_deletes=True
    )


class ShipmentTrackingEvent(Base):
    __tablename__ = "shipment_tracking_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str | None] = mapped_column(String(80))
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(200))
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    shipment = relationship("Shipment", back_populates="tracking_events")


class Product(ExternalRecordMixin, Base):
    __tablename__ = "products"

    sku: Mapped[str | None] = mapped_column(String(200), index=True)
    name: Mapped[str | None] = mapped_column(String(300))
    category: Mapped[str | None] = mapped_column(String(120))
    price: Mapped[float | None] = mapped_column(Float)
    cost: Mapped[float | None] = mapped_column(Float)


class InventoryItem(ExternalRecordMixin, Base):
    __tablename__ = "inventory_items"

    product_external_id: Mapped[str | None] = mapped_column(String(200))
    sku: Mapped[str | None] = mapped_column(String(200), index=True)
    warehouse_external_id: Mapped[str | None] = mapped_column(String(200))
    quantity_on_hand: Mapped[int] = mapped_column(Integer, default=0)
    quantity_fulfillable: Mapped[int] = mapped_column(Integer, default=0)


class InboundShipment(ExternalRecordMixin, Base):
    __tablename__ = "inbound_shipments"

    reference_number: Mapped[str | None] = mapped_column(String(200))
    tracking_number: Mapped[str | None] = mapped_column(String(200))
    carrier_name: Mapped[str | None] = mapped_column(String(120))
    warehouse_external_id: Mapped[str | None] = mapped_column(String(200))
    expected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    items = relationship(
        "InboundShipmentItem", back_populates="inbound_shipment", cascade="all, delete-orphan", passive_deletes=True
    )


class InboundShipmentItem(Base):
    __tablename__ = "inbound_shipment_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    inbound_shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("inbound_shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sku: Mapped[str] = mapped_column(String(200), nullable=False)
    product_name: Mapped[str | None] = mapped_column(String(300))
    expected_quantity: Mapped[int] = mapped_column(Integer, default=0)
    received_quantity: Mapped[int] = mapped_column(Integer, default=0)
    unit_cost: Mapped[float | None] = mapped_column(Float)

    inbound_shipment = relationship("InboundShipment", back_populates="items")


class Warehouse(ExternalRecordMixin, Base):
    __tablename__ = "warehouses"

    name: Mapped[str | None] = mapped_column(String(200))
    code: Mapped[str | None] = mapped_column(String(80))
    city: Mapped[str | None] = mapped_column(String(120))
    country: Mapped[str | None] = mapped_column(String(80))


ENTITY_MODELS = {
    EntityType.orders: Order,
    EntityType.shipments: Shipment,
    EntityType.products: Product,
    EntityType.inventory: InventoryItem,
    EntityType.inbound_shipments: InboundShipment,
    EntityType.warehouses: Warehouse,
}
