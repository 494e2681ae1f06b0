from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import String, DateTime, Numeric, ForeignKey, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt


class OperationalStatus(str, Enum):
    PENDING = "PENDING"
    READY_TO_SHIP = "READY_TO_SHIP"
    WAITING_FOR_PRODUCTION = "WAITING_FOR_PRODUCTION"
    IN_PRODUCTION = "IN_PRODUCTION"
    WAITING_FOR_MATERIALS = "WAITING_FOR_MATERIALS"
    BLOCKED = "BLOCKED"
    SHIPPED = "SHIPPED"
    DONE = "DONE"
    # Written by the marketplace sync for cancelled orders, never derived here.
    CANCELLED = "CANCELLED"


class OrderFlowStatus(str, Enum):
    NEW = "NEW"
    NEED_PRODUCTION = "NEED_PRODUCTION"
    NEED_MATERIALS = "NEED_MATERIALS"
    IN_PRODUCTION = "IN_PRODUCTION"
    READY_TO_SHIP = "READY_TO_SHIP"
    SHIPPED = "SHIPPED"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class FulfillmentStatus(str, Enum):
    PLANNED = "planned"
    IN_PRODUCTION = "in_production"
    READY = "ready"
    SHIPPED = "shipped"
    CANCELLED = "cancelled"


class FulfillmentType(str, Enum):
    PENDING = "PENDING"
    READY_STOCK = "READY_STOCK"
    PRODUCE_ON_DEMAND = "PRODUCE_ON_DEMAND"
    FBO = "FBO"


TERMINAL_OPERATIONAL_STATUSES = (OperationalStatus.DONE.value, OperationalStatus.CANCELLED.value)


class Order(Base, HasId, HasCreatedAt):
    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    warehouse_type: Mapped[str] = mapped_column(String(8), default="FBS", nullable=False)  # FBS|FBO
    operational_status: Mapped[str] = mapped_column(String(32), default=OperationalStatus.PENDING.value, nullable=False, index=True)
    order_flow_status: Mapped[str] = mapped_column(String(32), default=OrderFlowStatus.NEW.value, nullable=False, index=True)
    status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(back_populates="order", order_by="OrderItem.position")


class OrderItem(Base, HasId, HasCreatedAt):
    __tablename__ = "order_items"

    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    position: Mapped[int] = mapped_column(default=0, nullable=False)
    fulfillment_type: Mapped[str] = mapped_column(String(24), default=FulfillmentType.PENDING.value, nullable=False)
    fulfillment_status: Mapped[str] = mapped_column(String(16), default=FulfillmentStatus.PLANNED.value, nullable=False, index=True)
    fulfillment_source: Mapped[str | None] = mapped_column(String(24), nullable=True)  # HOME|OZON_FBO|PRODUCTION
    fulfillment_notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    fulfillment_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    production_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    stock_reserved: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")


class FulfillmentEvent(Base, HasId, HasCreatedAt):
    __tablename__ = "fulfillment_events"

    order_item_id: Mapped[str] = mapped_column(ForeignKey("order_items.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    event_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), default="system", nullable=False)


Index("ix_fulfillment_event_item_created", FulfillmentEvent.order_item_id, FulfillmentEvent.created_at)
