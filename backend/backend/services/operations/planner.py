"""Material deficit analysis and replenishment planning.

Read-only over the material ledger: outstanding production demand is exploded
through recipes and compared with what the lots still hold.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import REPLENISHMENT_HIGH_PRIORITY_THRESHOLD
from app.core.errors import InvalidTransition, NotFound
from app.db.models.common import utcnow
from app.db.models.materials import ReplenishmentRequest, ReplenishmentStatus
from app.db.models.production import ACTIVE_TASK_STATUSES, ProductionTask
from app.events import bus
from services.materials.ledger import _dec, available_quantity, book_lot, get_material
from services.production.recipes import required_materials, resolve_bom

logger = structlog.get_logger(__name__)

OPEN_REQUEST_STATUSES = (ReplenishmentStatus.PENDING.value, ReplenishmentStatus.ORDERED.value)


@dataclass
class MaterialDeficit:
    material_id: str | None
    material_name: str
    needed: Decimal
    have: Decimal
    deficit: Decimal
    unit: str


@dataclass
class ReplenishmentItem:
    material_id: str
    material_name: str
    quantity_needed: Decimal
    unit: str
    priority: str


def priority_for(quantity) -> str:
    return "high" if _dec(quantity) > REPLENISHMENT_HIGH_PRIORITY_THRESHOLD else "normal"


def materials_sufficient(db: Session, product_id: str, quantity) -> bool:
    """Whether current lots cover one production run of `quantity` units.

    A product without a recipe (or with an empty one) cannot be produced.
    """
    bom = resolve_bom(db, product_id)
    if not bom:
        return False
    needed = required_materials(bom, _dec(quantity))
    return all(available_quantity(db, material_id) >= need for material_id, (_, need) in needed.items())


def outstanding_demand(db: Session) -> dict[str, Decimal]:
    """Units still to be produced per product.

    Tasks whose materials were already consumed carry no further material need.
    """
    rows = (db.query(ProductionTask.product_id, func.sum(ProductionTask.quantity))
            .filter(ProductionTask.status.in_(ACTIVE_TASK_STATUSES))
            .filter(ProductionTask.materials_reserved == False)  # noqa: E712
            .group_by(ProductionTask.product_id)
            .order_by(ProductionTask.product_id)
            .all())
    return {product_id: _dec(total or 0) for product_id, total in rows}


def get_material_deficits(db: Session, *, stop: threading.Event | None = None) -> list[MaterialDeficit]:
    needs: dict[str, Decimal] = {}
    names: dict[str, tuple[str, str]] = {}
    missing_recipes: list[MaterialDeficit] = []

    for product_id, units in outstanding_demand(db).items():
        if stop is not None and stop.is_set():
            logger.info("planner.deficits_interrupted")
            break
        bom = resolve_bom(db, product_id)
        if bom is None:
            missing_recipes.append(MaterialDeficit(
                material_id=None,
                material_name=f"Recipe missing for product {product_id}",
                needed=units,
                have=Decimal("0"),
                deficit=units,
                unit="pcs",
            ))
            continue
        for line in bom:
            needs[line.material_id] = needs.get(line.material_id, Decimal("0")) + line.quantity_per_unit * units
            names[line.material_id] = (line.material_name, line.unit)

    deficits: list[MaterialDeficit] = []
    for material_id, needed in needs.items():
        have = available_quantity(db, material_id)
        deficit = needed - have
        if deficit > 0:
            name, unit = names[material_id]
            deficits.append(MaterialDeficit(material_id=material_id, material_name=name,
                                            needed=needed, have=have, deficit=deficit, unit=unit))
    deficits.sort(key=lambda d: d.material_name)
    logger.info("planner.deficits", materials=len(deficits), missing_recipes=len(missing_recipes))
    return deficits + missing_recipes


def get_replenishment_needs(db: Session) -> list[ReplenishmentItem]:
    items: list[ReplenishmentItem] = []
    for d in get_material_deficits(db):
        if d.material_id is None:
            # Needs a recipe, not a purchase
            continue
        qty = d.deficit.to_integral_value(rounding=ROUND_CEILING)
        items.append(ReplenishmentItem(material_id=d.material_id, material_name=d.material_name,
                                       quantity_needed=qty, unit=d.unit, priority=priority_for(qty)))
    return items


def create_replenishment_requests(db: Session, items: list[tuple[str, object]] | None = None,
                                  *, notes: str | None = None) -> list[ReplenishmentRequest]:
    """Persist pending requests, one per material without an open request.

    `items` is a list of (material_id, quantity); defaults to current needs.
    """
    if items is None:
        items = [(i.material_id, i.quantity_needed) for i in get_replenishment_needs(db)]
    for material_id, qty in items:
        get_material(db, material_id)
        if _dec(qty) <= 0:
            raise InvalidTransition(f"replenishment quantity must be positive for material {material_id}")

    created: list[ReplenishmentRequest] = []
    seen: set[str] = set()
    for material_id, qty in items:
        if material_id in seen:
            continue
        seen.add(material_id)
        open_req = (db.query(ReplenishmentRequest.id)
                    .filter(ReplenishmentRequest.material_id == material_id,
                            ReplenishmentRequest.status.in_(OPEN_REQUEST_STATUSES))
                    .first())
        if open_req:
            continue
        req = ReplenishmentRequest(material_id=material_id, quantity_needed=_dec(qty),
                                   status=ReplenishmentStatus.PENDING.value, priority=priority_for(qty),
                                   requested_at=utcnow(), notes=notes)
        db.add(req)
        created.append(req)
    db.flush()
    for req in created:
        bus.publish(db, "replenishment.requested", {"request_id": req.id, "material_id": req.material_id,
                                                    "quantity": float(req.quantity_needed), "priority": req.priority})
    db.commit()
    logger.info("planner.replenishment_requested", created=len(created), considered=len(items))
    return created


def list_requests(db: Session, *, status: str | None = None) -> list[ReplenishmentRequest]:
    q = db.query(ReplenishmentRequest)
    if status:
        q = q.filter(ReplenishmentRequest.status == status)
    return q.order_by(ReplenishmentRequest.requested_at.asc(), ReplenishmentRequest.id.asc()).all()


def _get_request(db: Session, request_id: str) -> ReplenishmentRequest:
    req = db.query(ReplenishmentRequest).filter(ReplenishmentRequest.id == request_id).with_for_update().first()
    if not req:
        raise NotFound("replenishment request", request_id)
    return req


def mark_ordered(db: Session, request_id: str) -> ReplenishmentRequest:
    req = _get_request(db, request_id)
    if req.status == ReplenishmentStatus.ORDERED.value:
        return req
    if req.status != ReplenishmentStatus.PENDING.value:
        raise InvalidTransition(f"replenishment request {request_id} is {req.status}, cannot mark ordered")
    req.status = ReplenishmentStatus.ORDERED.value
    req.ordered_at = utcnow()
    db.commit()
    return req


def mark_received(db: Session, request_id: str, *, cost_per_unit, quantity=None, supplier: str | None = None) -> ReplenishmentRequest:
    """Close a request and book the delivery as a new lot."""
    req = _get_request(db, request_id)
    if req.status not in OPEN_REQUEST_STATUSES:
        raise InvalidTransition(f"replenishment request {request_id} is {req.status}, cannot receive")
    book_lot(db, material_id=req.material_id, quantity=quantity if quantity is not None else req.quantity_needed,
             cost_per_unit=cost_per_unit, supplier=supplier, reason=f"replenishment:{req.id}")
    req.status = ReplenishmentStatus.RECEIVED.value
    req.received_at = utcnow()
    if req.ordered_at is None:
        req.ordered_at = req.received_at
    db.commit()
    logger.info("planner.replenishment_received", request_id=request_id, material_id=req.material_id)
    return req
