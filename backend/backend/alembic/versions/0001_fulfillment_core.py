"""fulfillment core: materials, recipes, production queue, inventory, orders, event bus

Revision ID: 0001_fulfillment_core
Revises:
Create Date: 2026-10-18T09:00:00.000000Z
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_fulfillment_core"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns():
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        "materials",
        *_base_columns(),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False, server_default="pcs"),
        sa.Column("kind", sa.String(length=32), nullable=False, server_default="blank"),
        sa.Column("attributes", sa.JSON(), nullable=False),
    )
    op.create_index("ix_materials_name", "materials", ["name"])

    op.create_table(
        "material_lots",
        *_base_columns(),
        sa.Column("material_id", sa.String(length=36), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("quantity_received", sa.Numeric(18, 6), nullable=False),
        sa.Column("quantity_remaining", sa.Numeric(18, 6), nullable=False),
        sa.Column("cost_per_unit", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("warehouse_id", sa.String(length=64), nullable=False, server_default="HOME"),
        sa.Column("supplier", sa.String(length=256), nullable=True),
        sa.CheckConstraint("quantity_remaining >= 0", name="ck_material_lot_qty_nonneg"),
    )
    op.create_index("ix_material_lots_material_id", "material_lots", ["material_id"])
    op.create_index("ix_material_lots_warehouse_id", "material_lots", ["warehouse_id"])
    op.create_index("ix_material_lot_fifo", "material_lots", ["material_id", "received_at", "id"])

    op.create_table(
        "material_movements",
        *_base_columns(),
        sa.Column("lot_id", sa.String(length=36), sa.ForeignKey("material_lots.id"), nullable=False),
        sa.Column("material_id", sa.String(length=36), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("movement_type", sa.String(length=16), nullable=False),
        sa.Column("qty", sa.Numeric(18, 6), nullable=False),
        sa.Column("unit_cost", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("ext_cost", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("production_task_id", sa.String(length=36), nullable=True),
        sa.Column("reason", sa.String(length=256), nullable=True),
    )
    op.create_index("ix_material_movements_lot_id", "material_movements", ["lot_id"])
    op.create_index("ix_material_movements_material_id", "material_movements", ["material_id"])
    op.create_index("ix_material_movements_movement_type", "material_movements", ["movement_type"])
    op.create_index("ix_material_movements_production_task_id", "material_movements", ["production_task_id"])

    op.create_table(
        "recipes",
        *_base_columns(),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("production_time_minutes", sa.Integer(), nullable=True),
    )
    op.create_index("ix_recipes_product_id", "recipes", ["product_id"])

    op.create_table(
        "recipe_materials",
        *_base_columns(),
        sa.Column("recipe_id", sa.String(length=36), sa.ForeignKey("recipes.id"), nullable=False),
        sa.Column("material_id", sa.String(length=36), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("quantity_required", sa.Numeric(18, 6), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_recipe_materials_recipe_id", "recipe_materials", ["recipe_id"])
    op.create_index("ix_recipe_materials_material_id", "recipe_materials", ["material_id"])

    op.create_table(
        "replenishment_requests",
        *_base_columns(),
        sa.Column("material_id", sa.String(length=36), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("quantity_needed", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="normal"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("ordered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_replenishment_requests_material_id", "replenishment_requests", ["material_id"])
    op.create_index("ix_replenishment_requests_status", "replenishment_requests", ["status"])

    op.create_table(
        "production_queue",
        *_base_columns(),
        sa.Column("order_item_id", sa.String(length=36), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(length=8), nullable=False, server_default="normal"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("materials_reserved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("production_cost", sa.Numeric(18, 6), nullable=True),
        sa.Column("quantity_produced", sa.Numeric(18, 6), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
    )
    op.create_index("ix_production_queue_order_item_id", "production_queue", ["order_item_id"])
    op.create_index("ix_production_queue_product_id", "production_queue", ["product_id"])
    op.create_index("ix_production_queue_status", "production_queue", ["status"])
    op.create_index("ix_production_queue_item_status", "production_queue", ["order_item_id", "status"])

    op.create_table(
        "inventory",
        *_base_columns(),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("warehouse_location", sa.String(length=64), nullable=False, server_default="HOME"),
        sa.Column("quantity_in_stock", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("quantity_reserved", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("min_stock_level", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("product_id", "warehouse_location", name="uq_inventory_product_warehouse"),
        sa.CheckConstraint("quantity_in_stock >= 0", name="ck_inventory_stock_nonneg"),
        sa.CheckConstraint("quantity_reserved >= 0", name="ck_inventory_reserved_nonneg"),
        sa.CheckConstraint("quantity_reserved <= quantity_in_stock", name="ck_inventory_reserved_le_stock"),
    )
    op.create_index("ix_inventory_product_id", "inventory", ["product_id"])

    op.create_table(
        "orders",
        *_base_columns(),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=256), nullable=True),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("warehouse_type", sa.String(length=8), nullable=False, server_default="FBS"),
        sa.Column("operational_status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("order_flow_status", sa.String(length=32), nullable=False, server_default="NEW"),
        sa.Column("status_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_operational_status", "orders", ["operational_status"])
    op.create_index("ix_orders_order_flow_status", "orders", ["order_flow_status"])
    op.create_index("ix_orders_shipped_at", "orders", ["shipped_at"])

    op.create_table(
        "order_items",
        *_base_columns(),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("price", sa.Numeric(18, 2), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fulfillment_type", sa.String(length=24), nullable=False, server_default="PENDING"),
        sa.Column("fulfillment_status", sa.String(length=16), nullable=False, server_default="planned"),
        sa.Column("fulfillment_source", sa.String(length=24), nullable=True),
        sa.Column("fulfillment_notes", sa.String(length=512), nullable=True),
        sa.Column("fulfillment_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("production_task_id", sa.String(length=36), nullable=True),
        sa.Column("stock_reserved", sa.Numeric(18, 6), nullable=False, server_default="0"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product_id", "order_items", ["product_id"])
    op.create_index("ix_order_items_fulfillment_status", "order_items", ["fulfillment_status"])
    op.create_index("ix_order_items_production_task_id", "order_items", ["production_task_id"])

    op.create_table(
        "fulfillment_events",
        *_base_columns(),
        sa.Column("order_item_id", sa.String(length=36), sa.ForeignKey("order_items.id"), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False, server_default="system"),
    )
    op.create_index("ix_fulfillment_events_order_item_id", "fulfillment_events", ["order_item_id"])
    op.create_index("ix_fulfillment_events_event_type", "fulfillment_events", ["event_type"])
    op.create_index("ix_fulfillment_event_item_created", "fulfillment_events", ["order_item_id", "created_at"])

    op.create_table(
        "outbox_event",
        *_base_columns(),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_outbox_event_topic", "outbox_event", ["topic"])
    op.create_index("ix_outbox_topic_created", "outbox_event", ["topic", "created_at"])
    op.create_index("ix_outbox_delivery", "outbox_event", ["delivered", "available_at"])

    op.create_table(
        "event_subscription",
        *_base_columns(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("topic_pattern", sa.String(length=128), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=False),
        sa.Column("headers", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_event_subscription_topic_pattern", "event_subscription", ["topic_pattern"])
    op.create_index("ix_event_sub_active", "event_subscription", ["is_active", "topic_pattern"])


def downgrade():
    for table in (
        "event_subscription",
        "outbox_event",
        "fulfillment_events",
        "order_items",
        "orders",
        "inventory",
        "production_queue",
        "replenishment_requests",
        "recipe_materials",
        "recipes",
        "material_movements",
        "material_lots",
        "materials",
    ):
        op.drop_table(table)
