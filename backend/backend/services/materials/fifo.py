"""FIFO reservation of raw-material lots.

Lots are consumed oldest first (received_at, then lot id). A single-material
reservation allocates what exists and reports the rest as shortage. A recipe
reservation plans every material first and consumes nothing unless all of
them can be satisfied.
"""

from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterator, Sequence

import structlog
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.core.quantities import positive
from app.db.models.materials import MaterialLot, MaterialMovement, MovementType
from app.events import bus
from services.materials.ledger import _dec, fifo_lots, get_material
from services.production.recipes import required_materials, resolve_bom

logger = structlog.get_logger(__name__)

_locks_guard = threading.Lock()
_material_locks: dict[str, threading.RLock] = {}


def _lock_for(material_id: str) -> threading.RLock:
    with _locks_guard:
        lock = _material_locks.get(material_id)
        if lock is None:
            lock = _material_locks[material_id] = threading.RLock()
        return lock


@contextmanager
def material_locks(material_ids: Sequence[str]) -> Iterator[None]:
    """Hold the per-material mutexes until the block exits.

    Acquired in sorted order so two recipes sharing materials cannot deadlock.
    The locks are reentrant: a caller that reserves with commit=False must
    hold them itself until its transaction commits.
    Row locks (SELECT ... FOR UPDATE) cover other processes on stores that
    support them.
    """
    with ExitStack() as stack:
        for material_id in sorted(set(material_ids)):
            stack.enter_context(_lock_for(material_id))
        yield


@dataclass
class ConsumedLot:
    lot_id: str
    quantity: Decimal
    cost_per_unit: Decimal
    ext_cost: Decimal


@dataclass
class ReservationResult:
    material_id: str
    requested_quantity: Decimal
    fulfilled_quantity: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    consumed_lots: list[ConsumedLot] = field(default_factory=list)
    shortage: Decimal = Decimal("0")

    @property
    def satisfied(self) -> bool:
        return self.shortage <= 0


@dataclass
class MissingMaterial:
    material_id: str
    material_name: str
    required: Decimal
    available: Decimal
    shortage: Decimal


@dataclass
class RecipeReservation:
    product_id: str
    quantity: Decimal
    success: bool
    reservations: list[ReservationResult] = field(default_factory=list)
    missing_materials: list[MissingMaterial] = field(default_factory=list)

    @property
    def total_cost(self) -> Decimal:
        return sum((r.total_cost for r in self.reservations), Decimal("0"))


def plan_fifo(material_id: str, lots: Sequence[MaterialLot], quantity) -> ReservationResult:
    """Walk lots oldest first without touching them."""
    need = _dec(quantity)
    result = ReservationResult(material_id=material_id, requested_quantity=need)
    remaining = need
    for lot in lots:
        if remaining <= 0:
            break
        on_hand = _dec(lot.quantity_remaining)
        if on_hand <= 0:
            continue
        take = on_hand if on_hand <= remaining else remaining
        cost = _dec(lot.cost_per_unit)
        result.consumed_lots.append(ConsumedLot(lot_id=lot.id, quantity=take, cost_per_unit=cost, ext_cost=take * cost))
        result.fulfilled_quantity += take
        result.total_cost += take * cost
        remaining -= take
    result.shortage = remaining if remaining > 0 else Decimal("0")
    return result


def _apply_plan(db: Session, plan: ReservationResult, lots: Sequence[MaterialLot], *,
                production_task_id: str | None, reason: str) -> None:
    by_id = {lot.id: lot for lot in lots}
    for c in plan.consumed_lots:
        lot = by_id[c.lot_id]
        lot.quantity_remaining = _dec(lot.quantity_remaining) - c.quantity
        db.add(MaterialMovement(
            lot_id=lot.id,
            material_id=plan.material_id,
            movement_type=MovementType.CONSUME.value,
            qty=-c.quantity,
            unit_cost=c.cost_per_unit,
            ext_cost=c.ext_cost,
            production_task_id=production_task_id,
            reason=reason,
        ))


def fifo_reserve(db: Session, material_id: str, quantity, *, production_task_id: str | None = None,
                 reason: str = "production", commit: bool = True) -> ReservationResult:
    """Consume up to `quantity` of one material, oldest lots first.

    Whatever is available is consumed even when it falls short; the shortfall
    is reported on the result and nothing is rolled back.
    """
    qty = positive(quantity)
    get_material(db, material_id)
    with material_locks([material_id]):
        lots = fifo_lots(db, material_id, for_update=True)
        plan = plan_fifo(material_id, lots, qty)
        _apply_plan(db, plan, lots, production_task_id=production_task_id, reason=reason)
        if commit:
            db.commit()
        else:
            db.flush()
    logger.info(
        "fifo.reserved",
        material_id=material_id,
        requested=str(plan.requested_quantity),
        fulfilled=str(plan.fulfilled_quantity),
        shortage=str(plan.shortage),
        total_cost=str(plan.total_cost),
        lots=len(plan.consumed_lots),
    )
    return plan


def _requirements(db: Session, product_id: str, quantity) -> list[tuple[str, str, Decimal]]:
    bom = resolve_bom(db, product_id)
    if bom is None:
        raise NotFound("recipe for product", product_id)
    merged = required_materials(bom, positive(quantity))
    return [(material_id, name, required) for material_id, (name, required) in merged.items()]


def _plan_recipe(db: Session, product_id: str, quantity, *, for_update: bool):
    reqs = _requirements(db, product_id, quantity)
    outcome = RecipeReservation(product_id=product_id, quantity=_dec(quantity), success=True)
    lots_by_material: dict[str, list[MaterialLot]] = {}
    for material_id, name, required in reqs:
        lots = fifo_lots(db, material_id, for_update=for_update)
        lots_by_material[material_id] = lots
        plan = plan_fifo(material_id, lots, required)
        outcome.reservations.append(plan)
        if not plan.satisfied:
            outcome.success = False
            outcome.missing_materials.append(MissingMaterial(
                material_id=material_id,
                material_name=name,
                required=required,
                available=plan.fulfilled_quantity,
                shortage=plan.shortage,
            ))
    return outcome, lots_by_material


def check_materials(db: Session, product_id: str, quantity) -> RecipeReservation:
    """Dry run of a recipe reservation: the plan and its cost, nothing consumed."""
    outcome, _ = _plan_recipe(db, product_id, quantity, for_update=False)
    return outcome


def reserve_materials(db: Session, product_id: str, quantity, *, production_task_id: str | None = None,
                      commit: bool = True) -> RecipeReservation:
    """Reserve every material of the product's recipe, or none of them."""
    material_ids = [m for m, _, _ in _requirements(db, product_id, quantity)]
    with material_locks(material_ids):
        outcome, lots_by_material = _plan_recipe(db, product_id, quantity, for_update=True)
        if not outcome.success:
            outcome.reservations = []
            logger.info(
                "fifo.recipe_short",
                product_id=product_id,
                quantity=str(quantity),
                missing=[m.material_id for m in outcome.missing_materials],
            )
            return outcome

        for plan in outcome.reservations:
            _apply_plan(db, plan, lots_by_material[plan.material_id],
                        production_task_id=production_task_id, reason=f"recipe:{product_id}")
        bus.publish(db, "materials.reserved", {
            "product_id": product_id,
            "quantity": float(outcome.quantity),
            "production_task_id": production_task_id,
            "total_cost": float(outcome.total_cost),
        })
        if commit:
            db.commit()
        else:
            db.flush()
    logger.info("fifo.recipe_reserved", product_id=product_id, quantity=str(quantity),
                total_cost=str(outcome.total_cost), production_task_id=production_task_id)
    return outcome
