"""Create WMS sync tables.

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision = "a3f1c2d4e5b6"
down_revision = None
branch_labels = None
depends_on = None

_ENTITY_TYPES = ("orders", "shipments", "products", "inventory", "inbound_shipments", "warehouses")


def _external_record_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("normalized_status", sa.String(length=40), nullable=False),
        sa.Column("vendor_status", sa.String(length=80), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("updated_at_remote", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _create_external_table(name: str, *columns: sa.Column) -> None:
    op.create_table(
        name,
        *_external_record_columns(),
        *columns,
        sa.UniqueConstraint("tenant_id", "external_id", name=f"uq_{name}_tenant_external"),
    )
    op.create_index(f"ix_{name}_tenant_id", name, ["tenant_id"])


def upgrade() -> None:
    entitytype = sa.Enum(*_ENTITY_TYPES, name="entitytype")
    synctier = sa.Enum("realtime", "medium", "low", "full", "manual", name="synctier")
    syncstatus = sa.Enum("idle", "running", "success", "partial", "error", name="syncstatus")

    op.create_table(
        "tenants",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "tenant_integrations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("vendor", sa.String(length=40), nullable=False),
        sa.Column("connection_id", sa.String(length=200), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("base_url", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_webhook_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "vendor", name="uq_tenant_integrations_tenant_vendor"),
        sa.UniqueConstraint("vendor", "connection_id", name="uq_tenant_integrations_vendor_connection"),
    )

    op.create_table(
        "sync_states",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("entity_type", entitytype, nullable=False),
        sa.Column("tier", synctier, nullable=False),
        sa.Column("status", syncstatus, nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_processed", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=True),
        sa.Column("error_detail", sa.JSON(), nullable=True),
        sa.Column("possible_truncation", sa.Boolean(), nullable=True),
        sa.Column("next_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "entity_type", "tier", name="uq_sync_states_tenant_entity_tier"),
    )
    op.create_index("ix_sync_states_tier_next", "sync_states", ["tier", "next_scheduled_at"])

    _create_external_table(
        "orders",
        sa.Column("order_number", sa.String(length=120), nullable=True),
        sa.Column("customer_id", sa.String(length=200), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("warehouse_external_id", sa.String(length=200), nullable=True),
        sa.Column("total", sa.Float(), nullable=True),
        sa.Column("subtotal", sa.Float(), nullable=True),
    )
    op.create_table(
        "order_line_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_line_id", sa.String(length=200), nullable=True),
        sa.Column("sku", sa.String(length=200), nullable=True),
        sa.Column("name", sa.String(length=300), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("unit_price", sa.Float(), nullable=True),
    )
    op.create_index("ix_order_line_items_order_id", "order_line_items", ["order_id"])

    _create_external_table(
        "shipments",
        sa.Column("order_external_id", sa.String(length=200), nullable=True),
        sa.Column("tracking_number", sa.String(length=200), nullable=True),
        sa.Column("carrier", sa.String(length=120), nullable=True),
        sa.Column("service", sa.String(length=120), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_shipments_order_external_id", "shipments", ["order_external_id"])
    op.create_table(
        "shipment_tracking_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "shipment_id", UUID(as_uuid=True), sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("status", sa.String(length=80), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=200), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_shipment_tracking_events_shipment_id", "shipment_tracking_events", ["shipment_id"])

    _create_external_table(
        "products",
        sa.Column("sku", sa.String(length=200), nullable=True),
        sa.Column("name", sa.String(length=300), nullable=True),
        sa.Column("category", sa.String(length=120), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("cost", sa.Float(), nullable=True),
    )
    op.create_index("ix_products_sku", "products", ["sku"])

    _create_external_table(
        "inventory_items",
        sa.Column("product_external_id", sa.String(length=200), nullable=True),
        sa.Column("sku", sa.String(length=200), nullable=True),
        sa.Column("warehouse_external_id", sa.String(length=200), nullable=True),
        sa.Column("quantity_on_hand", sa.Integer(), nullable=True),
        sa.Column("quantity_fulfillable", sa.Integer(), nullable=True),
    )
    op.create_index("ix_inventory_items_sku", "inventory_items", ["sku"])

    _create_external_table(
        "inbound_shipments",
        sa.Column("reference_number", sa.String(length=200), nullable=True),
        sa.Column("tracking_number", sa.String(length=200), nullable=True),
        sa.Column("carrier_name", sa.String(length=120), nullable=True),
        sa.Column("warehouse_external_id", sa.String(length=200), nullable=True),
        sa.Column("expected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "inbound_shipment_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "inbound_shipment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("inbound_shipments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sku", sa.String(length=200), nullable=False),
        sa.Column("product_name", sa.String(length=300), nullable=True),
        sa.Column("expected_quantity", sa.Integer(), nullable=True),
        sa.Column("received_quantity", sa.Integer(), nullable=True),
        sa.Column("unit_cost", sa.Float(), nullable=True),
    )
    op.create_index("ix_inbound_shipment_items_inbound_shipment_id", "inbound_shipment_items", ["inbound_shipment_id"])

    _create_external_table(
        "warehouses",
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("code", sa.String(length=80), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("country", sa.String(length=80), nullable=True),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("vendor", sa.String(length=40), nullable=False),
        sa.Column("event_id", sa.String(length=200), nullable=False),
        sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("connection_id", sa.String(length=200), nullable=True),
        sa.Column("event_type", sa.String(length=120), nullable=True),
        sa.Column("event_category", sa.String(length=40), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("outcome", sa.String(length=40), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("vendor", "event_id", name="uq_webhook_events_vendor_event"),
    )
    op.create_index("ix_webhook_events_pending", "webhook_events", ["processed_at", "received_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_events_pending", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("warehouses")
    op.drop_index("ix_inbound_shipment_items_inbound_shipment_id", table_name="inbound_shipment_items")
    op.drop_table("inbound_shipment_items")
    op.drop_table("inbound_shipments")
    op.drop_index("ix_inventory_items_sku", table_name="inventory_items")
    op.drop_table("inventory_items")
    op.drop_index("ix_products_sku", table_name="products")
    op.drop_table("products")
    op.drop_index("ix_shipment_tracking_events_shipment_id", table_name="shipment_tracking_events")
    op.drop_table("shipment_tracking_events")
    op.drop_index("ix_shipments_order_external_id", table_name="shipments")
    op.drop_table("shipments")
    op.drop_index("ix_order_line_items_order_id", table_name="order_line_items")
    op.drop_table("order_line_items")
    op.drop_table("orders")
    op.drop_index("ix_sync_states_tier_next", table_name="sync_states")
    op.drop_table("sync_states")
    op.drop_table("tenant_integrations")
    op.drop_table("tenants")
    sa.Enum(name="syncstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="synctier").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="entitytype").drop(op.get_bind(), checkfirst=True)
