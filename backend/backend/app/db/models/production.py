from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import String, DateTime, Numeric, Boolean, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column
from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)


class ProductionTask(Base, HasId, HasCreatedAt):
    __tablename__ = "production_queue"

    order_item_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.PENDING.value, nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(8), default="normal", nullable=False)  # high|normal|low
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    materials_reserved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    production_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    quantity_produced: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


Index("ix_production_queue_item_status", ProductionTask.order_item_id, ProductionTask.status)
