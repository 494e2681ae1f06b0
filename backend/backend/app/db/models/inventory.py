"""
MODULE: FINISHED-GOODS INVENTORY
One row per (product, warehouse).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Numeric, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, utcnow


class InventoryRecord(Base, HasId, HasCreatedAt):
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_location", name="uq_inventory_product_warehouse"),
        CheckConstraint("quantity_in_stock >= 0", name="ck_inventory_stock_nonneg"),
        CheckConstraint("quantity_reserved >= 0", name="ck_inventory_reserved_nonneg"),
        CheckConstraint("quantity_reserved <= quantity_in_stock", name="ck_inventory_reserved_le_stock"),
    )

    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    warehouse_location: Mapped[str] = mapped_column(String(64), default="HOME", nullable=False)
    quantity_in_stock: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    quantity_reserved: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    min_stock_level: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def available(self) -> Decimal:
        return Decimal(self.quantity_in_stock or 0) - Decimal(self.quantity_reserved or 0)
