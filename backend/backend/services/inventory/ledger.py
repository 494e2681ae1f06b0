from __future__ import annotations
from decimal import Decimal

import structlog
from sqlalchemy.orm import Session

from app.core.config import DEFAULT_WAREHOUSE
from app.core.errors import NegativeStock, NotFound
from app.core.quantities import to_decimal
from app.db.models.common import utcnow
from app.db.models.inventory import InventoryRecord
from app.events import bus

logger = structlog.get_logger(__name__)


def _dec(x) -> Decimal:
    return to_decimal(x)


def get_record(db: Session, product_id: str, warehouse: str = DEFAULT_WAREHOUSE, *, for_update: bool = False) -> InventoryRecord | None:
    q = db.query(InventoryRecord).filter(
        InventoryRecord.product_id == product_id,
        InventoryRecord.warehouse_location == warehouse,
    )
    if for_update:
        q = q.with_for_update()
    return q.first()


def _get_or_create(db: Session, product_id: str, warehouse: str) -> InventoryRecord:
    rec = get_record(db, product_id, warehouse, for_update=True)
    if not rec:
        rec = InventoryRecord(product_id=product_id, warehouse_location=warehouse,
                              quantity_in_stock=Decimal("0"), quantity_reserved=Decimal("0"), min_stock_level=Decimal("0"))
        db.add(rec)
        db.flush()
    return rec


def available_quantity(db: Session, product_id: str, warehouse: str = DEFAULT_WAREHOUSE) -> Decimal:
    rec = get_record(db, product_id, warehouse)
    return rec.available if rec else Decimal("0")


def _set(rec: InventoryRecord, *, in_stock: Decimal, reserved: Decimal) -> None:
    # Validate before touching the row so a rejected change leaves it as it was.
    if in_stock < 0:
        raise NegativeStock(f"stock of {rec.product_id}@{rec.warehouse_location} cannot go negative ({in_stock})")
    if reserved < 0:
        raise NegativeStock(f"reserved quantity of {rec.product_id}@{rec.warehouse_location} cannot go negative ({reserved})")
    if reserved > in_stock:
        raise NegativeStock(
            f"reserved {reserved} would exceed stock {in_stock} for {rec.product_id}@{rec.warehouse_location}"
        )
    rec.quantity_in_stock = in_stock
    rec.quantity_reserved = reserved
    rec.last_updated_at = utcnow()


def adjust(db: Session, product_id: str, delta, *, warehouse: str = DEFAULT_WAREHOUSE, reason: str | None = None,
           commit: bool = True) -> InventoryRecord:
    """Manual stock correction. Rejected when stock would drop below zero or below what is reserved."""
    d = _dec(delta)
    rec = get_record(db, product_id, warehouse, for_update=True)
    if rec is None:
        if d < 0:
            raise NegativeStock(f"no stock of {product_id}@{warehouse} to remove")
        rec = _get_or_create(db, product_id, warehouse)
    _set(rec, in_stock=_dec(rec.quantity_in_stock) + d, reserved=_dec(rec.quantity_reserved))
    bus.publish(db, "inventory.adjusted", {"product_id": product_id, "warehouse": warehouse, "delta": float(d), "reason": reason})
    if commit:
        db.commit()
    else:
        db.flush()
    logger.info("inventory.adjusted", product_id=product_id, warehouse=warehouse, delta=str(d), reason=reason)
    return rec


def credit(db: Session, product_id: str, qty, *, warehouse: str = DEFAULT_WAREHOUSE) -> InventoryRecord:
    q = _dec(qty)
    if q < 0:
        raise NegativeStock(f"cannot credit a negative quantity ({q})")
    rec = _get_or_create(db, product_id, warehouse)
    _set(rec, in_stock=_dec(rec.quantity_in_stock) + q, reserved=_dec(rec.quantity_reserved))
    db.flush()
    return rec


def reserve(db: Session, product_id: str, qty, *, warehouse: str = DEFAULT_WAREHOUSE) -> InventoryRecord:
    rec = get_record(db, product_id, warehouse, for_update=True)
    if rec is None:
        raise NotFound("inventory", f"{product_id}@{warehouse}")
    _set(rec, in_stock=_dec(rec.quantity_in_stock), reserved=_dec(rec.quantity_reserved) + _dec(qty))
    db.flush()
    return rec


def release(db: Session, product_id: str, qty, *, warehouse: str = DEFAULT_WAREHOUSE) -> InventoryRecord:
    rec = get_record(db, product_id, warehouse, for_update=True)
    if rec is None:
        raise NotFound("inventory", f"{product_id}@{warehouse}")
    _set(rec, in_stock=_dec(rec.quantity_in_stock), reserved=_dec(rec.quantity_reserved) - _dec(qty))
    db.flush()
    return rec


def issue_reserved(db: Session, product_id: str, qty, *, warehouse: str = DEFAULT_WAREHOUSE) -> InventoryRecord:
    """Ship reserved stock: both in-stock and reserved drop by qty."""
    rec = get_record(db, product_id, warehouse, for_update=True)
    if rec is None:
        raise NotFound("inventory", f"{product_id}@{warehouse}")
    q = _dec(qty)
    _set(rec, in_stock=_dec(rec.quantity_in_stock) - q, reserved=_dec(rec.quantity_reserved) - q)
    db.flush()
    return rec
