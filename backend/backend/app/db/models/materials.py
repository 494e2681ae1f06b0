"""
MODULE: MATERIALS
Raw-material definitions, received lots (the only source of supply),
lot movements, recipes (bill of materials) and replenishment requests.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, JSON, Boolean, Index, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, utcnow


class MovementType(str, Enum):
    RECEIPT = "RECEIPT"
    CONSUME = "CONSUME"
    ADJUST = "ADJUST"


class ReplenishmentStatus(str, Enum):
    PENDING = "pending"
    ORDERED = "ordered"
    RECEIVED = "received"


class MaterialDefinition(Base, HasId, HasCreatedAt):
    __tablename__ = "materials"

    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(16), default="pcs", nullable=False)
    kind: Mapped[str] = mapped_column(String(32), default="blank", nullable=False)  # blank|consumable|packaging
    attributes: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    lots: Mapped[list["MaterialLot"]] = relationship(back_populates="material")


class MaterialLot(Base, HasId, HasCreatedAt):
    __tablename__ = "material_lots"
    __table_args__ = (CheckConstraint("quantity_remaining >= 0", name="ck_material_lot_qty_nonneg"),)

    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id"), nullable=False, index=True)
    quantity_received: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    quantity_remaining: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    cost_per_unit: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String(64), default="HOME", nullable=False, index=True)
    supplier: Mapped[str | None] = mapped_column(String(256), nullable=True)

    material: Mapped[MaterialDefinition] = relationship(back_populates="lots")


# FIFO walk order
Index("ix_material_lot_fifo", MaterialLot.material_id, MaterialLot.received_at, MaterialLot.id)


class MaterialMovement(Base, HasId, HasCreatedAt):
    __tablename__ = "material_movements"

    lot_id: Mapped[str] = mapped_column(ForeignKey("material_lots.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id"), nullable=False, index=True)
    movement_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # RECEIPT|CONSUME|ADJUST
    qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)  # signed
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    ext_cost: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    production_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)


class Recipe(Base, HasId, HasCreatedAt):
    __tablename__ = "recipes"

    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    production_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    lines: Mapped[list["RecipeMaterial"]] = relationship(
        back_populates="recipe", order_by="RecipeMaterial.position", cascade="all, delete-orphan"
    )


class RecipeMaterial(Base, HasId, HasCreatedAt):
    __tablename__ = "recipe_materials"

    recipe_id: Mapped[str] = mapped_column(ForeignKey("recipes.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id"), nullable=False, index=True)
    quantity_required: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)  # per unit of product
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    recipe: Mapped[Recipe] = relationship(back_populates="lines")
    material: Mapped[MaterialDefinition] = relationship()


class ReplenishmentRequest(Base, HasId, HasCreatedAt):
    __tablename__ = "replenishment_requests"

    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id"), nullable=False, index=True)
    quantity_needed: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ReplenishmentStatus.PENDING.value, nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(16), default="normal", nullable=False)  # high|normal
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    ordered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    material: Mapped[MaterialDefinition] = relationship()
