"""Material cost of production, read back from the consumption ledger.

Every lot consumed for a production task leaves a CONSUME movement tagged with
the task id; the cost of a task is the sum of those movements at the lot's
unit cost.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from app.db.models.materials import MaterialDefinition, MaterialLot, MaterialMovement, MovementType
from services.production.queue import get_task


@dataclass
class ConsumedMaterial:
    material_id: str
    material_name: str
    lot_id: str
    supplier: str | None
    quantity: Decimal
    cost_per_unit: Decimal
    total_cost: Decimal


@dataclass
class ProductionCost:
    production_task_id: str
    product_id: str
    quantity: Decimal
    status: str
    materials: list[ConsumedMaterial] = field(default_factory=list)
    total_cost: Decimal = Decimal("0")

    @property
    def cost_per_unit(self) -> Decimal:
        q = Decimal(str(self.quantity))
        return self.total_cost / q if q > 0 else Decimal("0")


@dataclass
class SupplierCost:
    supplier: str
    total_quantity: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    movement_count: int = 0


UNKNOWN_SUPPLIER = "unspecified"


def _consumption(db: Session):
    return (db.query(MaterialMovement, MaterialLot, MaterialDefinition)
            .join(MaterialLot, MaterialLot.id == MaterialMovement.lot_id)
            .join(MaterialDefinition, MaterialDefinition.id == MaterialMovement.material_id)
            .filter(MaterialMovement.movement_type == MovementType.CONSUME.value))


def get_production_cost_details(db: Session, task_id: str) -> ProductionCost:
    """Lots consumed by one production task, in FIFO order."""
    task = get_task(db, task_id, for_update=False)
    rows = (_consumption(db)
            .filter(MaterialMovement.production_task_id == task_id)
            .order_by(MaterialLot.received_at.asc(), MaterialLot.id.asc())
            .all())
    cost = ProductionCost(production_task_id=task.id, product_id=task.product_id,
                          quantity=Decimal(str(task.quantity)), status=task.status)
    for mov, lot, material in rows:
        qty = -Decimal(str(mov.qty))
        unit = Decimal(str(mov.unit_cost))
        cost.materials.append(ConsumedMaterial(
            material_id=material.id,
            material_name=material.name,
            lot_id=lot.id,
            supplier=lot.supplier,
            quantity=qty,
            cost_per_unit=unit,
            total_cost=qty * unit,
        ))
        cost.total_cost += qty * unit
    return cost


def supplier_cost_summary(db: Session, *, limit: int = 1000) -> list[SupplierCost]:
    """Consumed quantity and cost per lot supplier over the latest `limit` consumptions, costliest first."""
    rows = (_consumption(db)
            .order_by(MaterialMovement.created_at.desc(), MaterialMovement.id.desc())
            .limit(limit)
            .all())
    by_supplier: dict[str, SupplierCost] = {}
    for mov, lot, _ in rows:
        name = lot.supplier or UNKNOWN_SUPPLIER
        entry = by_supplier.setdefault(name, SupplierCost(supplier=name))
        qty = -Decimal(str(mov.qty))
        entry.total_quantity += qty
        entry.total_cost += qty * Decimal(str(mov.unit_cost))
        entry.movement_count += 1
    return sorted(by_supplier.values(), key=lambda s: s.total_cost, reverse=True)
