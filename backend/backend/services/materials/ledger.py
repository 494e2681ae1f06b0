from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import DEFAULT_WAREHOUSE
from app.core.errors import InvalidTransition, NegativeStock, NotFound
from app.core.quantities import to_decimal
from app.db.models.common import utcnow
from app.db.models.materials import (
    MaterialDefinition,
    MaterialLot,
    MaterialMovement,
    MovementType,
    RecipeMaterial,
    ReplenishmentRequest,
)
from app.events import bus

logger = structlog.get_logger(__name__)


def _dec(x) -> Decimal:
    return to_decimal(x)


@dataclass
class MaterialAvailability:
    material_id: str
    material_name: str
    unit: str
    total_quantity: Decimal
    lot_count: int
    avg_cost_per_unit: Decimal


def get_material(db: Session, material_id: str) -> MaterialDefinition:
    m = db.query(MaterialDefinition).filter(MaterialDefinition.id == material_id).first()
    if not m:
        raise NotFound("material", material_id)
    return m


def create_material(db: Session, *, name: str, unit: str = "pcs", kind: str = "blank", attributes: dict | None = None) -> MaterialDefinition:
    m = MaterialDefinition(name=name, unit=unit, kind=kind, attributes=attributes or {})
    db.add(m)
    db.commit()
    db.refresh(m)
    return m


def _is_referenced(db: Session, material_id: str) -> bool:
    if db.query(MaterialLot.id).filter(MaterialLot.material_id == material_id).first():
        return True
    return db.query(RecipeMaterial.id).filter(RecipeMaterial.material_id == material_id).first() is not None


def update_material(db: Session, material_id: str, *, name: str | None = None, unit: str | None = None,
                    attributes: dict | None = None) -> MaterialDefinition:
    """Edit a definition. Name and unit are frozen once a lot or recipe line uses it."""
    m = get_material(db, material_id)
    identity_change = (name is not None and name != m.name) or (unit is not None and unit != m.unit)
    if identity_change and _is_referenced(db, material_id):
        raise InvalidTransition(f"material {material_id} is referenced by lots or recipes; name and unit are immutable")
    if name is not None:
        m.name = name
    if unit is not None:
        m.unit = unit
    if attributes is not None:
        m.attributes = attributes
    db.commit()
    return m


def fifo_lots(db: Session, material_id: str, *, for_update: bool = False, include_empty: bool = False) -> list[MaterialLot]:
    q = db.query(MaterialLot).filter(MaterialLot.material_id == material_id)
    if not include_empty:
        q = q.filter(MaterialLot.quantity_remaining > 0)
    # FIFO by received_at, id as tie-breaker
    q = q.order_by(MaterialLot.received_at.asc(), MaterialLot.id.asc())
    if for_update:
        q = q.with_for_update()
    return q.all()


def available_quantity(db: Session, material_id: str) -> Decimal:
    total = (db.query(func.coalesce(func.sum(MaterialLot.quantity_remaining), 0))
             .filter(MaterialLot.material_id == material_id)
             .scalar())
    return _dec(total or 0)


def material_availability(db: Session, material_id: str) -> MaterialAvailability:
    m = get_material(db, material_id)
    lots = fifo_lots(db, material_id)
    total = sum((_dec(l.quantity_remaining) for l in lots), Decimal("0"))
    value = sum((_dec(l.quantity_remaining) * _dec(l.cost_per_unit) for l in lots), Decimal("0"))
    return MaterialAvailability(
        material_id=m.id,
        material_name=m.name,
        unit=m.unit,
        total_quantity=total,
        lot_count=len(lots),
        avg_cost_per_unit=(value / total) if total > 0 else Decimal("0"),
    )


def list_materials(db: Session) -> list[MaterialAvailability]:
    """Every definition with its on-hand quantity and weighted average cost."""
    ids = [mid for (mid,) in db.query(MaterialDefinition.id).order_by(MaterialDefinition.name.asc()).all()]
    return [material_availability(db, mid) for mid in ids]


def list_lots(db: Session, *, material_id: str | None = None, include_empty: bool = False) -> list[MaterialLot]:
    if material_id:
        get_material(db, material_id)
        return fifo_lots(db, material_id, include_empty=include_empty)
    q = db.query(MaterialLot)
    if not include_empty:
        q = q.filter(MaterialLot.quantity_remaining > 0)
    return q.order_by(MaterialLot.material_id.asc(), MaterialLot.received_at.asc(), MaterialLot.id.asc()).all()


def delete_material(db: Session, material_id: str) -> None:
    """Remove a definition nothing refers to yet."""
    m = get_material(db, material_id)
    requested = db.query(ReplenishmentRequest.id).filter(ReplenishmentRequest.material_id == material_id).first()
    if requested or _is_referenced(db, material_id):
        raise InvalidTransition(f"material {material_id} is referenced by lots, recipes or requests and cannot be deleted")
    db.delete(m)
    db.commit()
    logger.info("materials.deleted", material_id=material_id)


def book_lot(db: Session, *, material_id: str, quantity, cost_per_unit, received_at: datetime | None = None,
             warehouse_id: str = DEFAULT_WAREHOUSE, supplier: str | None = None, reason: str | None = None) -> MaterialLot:
    """Add a received lot and its RECEIPT movement to the session without committing."""
    get_material(db, material_id)
    qty = _dec(quantity)
    cost = _dec(cost_per_unit)
    if qty <= 0:
        raise NegativeStock(f"lot quantity must be positive, got {qty}")
    if cost < 0:
        raise InvalidTransition(f"cost per unit cannot be negative, got {cost}")
    lot = MaterialLot(
        material_id=material_id,
        quantity_received=qty,
        quantity_remaining=qty,
        cost_per_unit=cost,
        received_at=received_at or utcnow(),
        warehouse_id=warehouse_id,
        supplier=supplier,
    )
    db.add(lot)
    db.flush()
    db.add(MaterialMovement(
        lot_id=lot.id,
        material_id=material_id,
        movement_type=MovementType.RECEIPT.value,
        qty=qty,
        unit_cost=cost,
        ext_cost=qty * cost,
        reason=reason or "receipt",
    ))
    bus.publish(db, "materials.lot.received", {
        "lot_id": lot.id,
        "material_id": material_id,
        "qty": float(qty),
        "cost_per_unit": float(cost),
        "warehouse_id": warehouse_id,
    })
    logger.info("materials.lot_received", lot_id=lot.id, material_id=material_id, qty=str(qty), cost_per_unit=str(cost))
    return lot


def receive_lot(db: Session, **kwargs) -> MaterialLot:
    lot = book_lot(db, **kwargs)
    db.commit()
    db.refresh(lot)
    return lot


def adjust_lot(db: Session, lot_id: str, delta, *, reason: str) -> MaterialLot:
    """Manual correction of a lot (count discrepancy, damage). Never below zero."""
    lot = db.query(MaterialLot).filter(MaterialLot.id == lot_id).with_for_update().first()
    if not lot:
        raise NotFound("material lot", lot_id)
    d = _dec(delta)
    new_qty = _dec(lot.quantity_remaining) + d
    if new_qty < 0:
        raise NegativeStock(f"lot {lot_id} would go negative: {lot.quantity_remaining} + ({d})")
    lot.quantity_remaining = new_qty
    db.add(MaterialMovement(
        lot_id=lot.id,
        material_id=lot.material_id,
        movement_type=MovementType.ADJUST.value,
        qty=d,
        unit_cost=lot.cost_per_unit,
        ext_cost=d * _dec(lot.cost_per_unit),
        reason=reason,
    ))
    db.commit()
    logger.info("materials.lot_adjusted", lot_id=lot_id, delta=str(d), remaining=str(new_qty), reason=reason)
    return lot
