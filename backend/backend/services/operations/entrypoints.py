"""Operations facade: every public fulfillment operation as a result envelope.

Each call runs in its own session. Business errors roll the session back and
come back as `success=False` with an `error_kind`; store failures are reported
as retryable persistence errors, anything else as a non-retryable internal
error. Nothing here raises to the caller.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, is_dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import DEFAULT_WAREHOUSE
from app.core.errors import FulfillmentError, PersistenceFailure
from app.core.quantities import positive
from app.db.models.inventory import InventoryRecord
from app.db.models.materials import MaterialDefinition, MaterialLot, Recipe, ReplenishmentRequest
from app.db.models.production import ProductionTask
from services.fulfillment import events as timeline
from services.fulfillment import service as fulfillment
from services.inventory import ledger as inventory
from services.materials import fifo
from services.materials import ledger as materials
from services.operations import planner, reaper, status
from services.production import costing, queue, recipes

logger = structlog.get_logger(__name__)


class OperationResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


def reservation_to_dict(r: fifo.RecipeReservation) -> dict:
    return {**asdict(r), "total_cost": r.total_cost}


def task_to_dict(t: ProductionTask) -> dict:
    return {
        "id": t.id,
        "order_item_id": t.order_item_id,
        "product_id": t.product_id,
        "quantity": t.quantity,
        "status": t.status,
        "priority": t.priority,
        "due_date": t.due_date,
        "started_at": t.started_at,
        "completed_at": t.completed_at,
        "cancelled_at": t.cancelled_at,
        "materials_reserved": t.materials_reserved,
        "production_cost": t.production_cost,
        "quantity_produced": t.quantity_produced,
    }


def lot_to_dict(lot: MaterialLot) -> dict:
    return {
        "id": lot.id,
        "material_id": lot.material_id,
        "quantity_received": lot.quantity_received,
        "quantity_remaining": lot.quantity_remaining,
        "cost_per_unit": lot.cost_per_unit,
        "received_at": lot.received_at,
        "warehouse_id": lot.warehouse_id,
        "supplier": lot.supplier,
    }


def inventory_to_dict(rec: InventoryRecord) -> dict:
    return {
        "product_id": rec.product_id,
        "warehouse_location": rec.warehouse_location,
        "quantity_in_stock": rec.quantity_in_stock,
        "quantity_reserved": rec.quantity_reserved,
        "available": rec.available,
    }


def request_to_dict(r: ReplenishmentRequest) -> dict:
    return {
        "id": r.id,
        "material_id": r.material_id,
        "quantity_needed": r.quantity_needed,
        "status": r.status,
        "priority": r.priority,
        "requested_at": r.requested_at,
        "ordered_at": r.ordered_at,
        "received_at": r.received_at,
        "notes": r.notes,
    }


def material_to_dict(m: MaterialDefinition) -> dict:
    return {"id": m.id, "name": m.name, "unit": m.unit, "kind": m.kind, "attributes": m.attributes or {}}


def recipe_to_dict(r: Recipe) -> dict:
    return {
        "id": r.id,
        "product_id": r.product_id,
        "name": r.name,
        "is_active": r.is_active,
        "production_time_minutes": r.production_time_minutes,
        "lines": [
            {"material_id": ln.material_id, "quantity_required": ln.quantity_required, "position": ln.position}
            for ln in r.lines
        ],
    }


def cost_to_dict(c: costing.ProductionCost) -> dict:
    return {**asdict(c), "cost_per_unit": c.cost_per_unit}


class FulfillmentOperations:
    def __init__(self, session_factory: Callable[[], Session], *, warehouse: str = DEFAULT_WAREHOUSE):
        self.session_factory = session_factory
        self.warehouse = warehouse

    def _run(self, op: str, fn: Callable[[Session], Any]) -> OperationResult:
        db = self.session_factory()
        try:
            return OperationResult(success=True, data=_plain(fn(db)))
        except FulfillmentError as e:
            db.rollback()
            logger.info("operation.rejected", op=op, kind=e.kind, error=str(e))
            return OperationResult(success=False, error=str(e), error_kind=e.kind, retryable=e.retryable)
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("operation.persistence_failed", op=op)
            failure = PersistenceFailure(f"{op} failed: {e.__class__.__name__}")
            return OperationResult(success=False, error=str(failure), error_kind=failure.kind, retryable=True)
        except Exception as e:
            db.rollback()
            logger.exception("operation.failed", op=op)
            return OperationResult(success=False, error=f"{op} failed: {e.__class__.__name__}",
                                   error_kind="internal", retryable=False)
        finally:
            db.close()

    # Materials

    def check_materials(self, product_id: str, quantity) -> OperationResult:
        return self._run("check_materials", lambda db: reservation_to_dict(fifo.check_materials(db, product_id, quantity)))

    def reserve_materials(self, product_id: str, quantity, *, production_task_id: str | None = None) -> OperationResult:
        return self._run("reserve_materials", lambda db: reservation_to_dict(
            fifo.reserve_materials(db, product_id, quantity, production_task_id=production_task_id)))

    def receive_material_lot(self, material_id: str, quantity, cost_per_unit, *, supplier: str | None = None) -> OperationResult:
        def _receive(db: Session) -> dict:
            return lot_to_dict(materials.receive_lot(db, material_id=material_id, quantity=quantity,
                                                     cost_per_unit=cost_per_unit, supplier=supplier,
                                                     warehouse_id=self.warehouse))
        return self._run("receive_material_lot", _receive)

    def adjust_material_lot(self, lot_id: str, delta, *, reason: str) -> OperationResult:
        return self._run("adjust_material_lot", lambda db: lot_to_dict(materials.adjust_lot(db, lot_id, delta, reason=reason)))

    def list_material_lots(self, material_id: str | None = None, *, include_empty: bool = False) -> OperationResult:
        return self._run("list_material_lots", lambda db: [
            lot_to_dict(lot) for lot in materials.list_lots(db, material_id=material_id, include_empty=include_empty)])

    def list_materials(self) -> OperationResult:
        return self._run("list_materials", lambda db: [asdict(a) for a in materials.list_materials(db)])

    def create_material(self, name: str, *, unit: str = "pcs", kind: str = "blank",
                        attributes: dict | None = None) -> OperationResult:
        return self._run("create_material", lambda db: material_to_dict(
            materials.create_material(db, name=name, unit=unit, kind=kind, attributes=attributes)))

    def update_material(self, material_id: str, *, name: str | None = None, unit: str | None = None,
                        attributes: dict | None = None) -> OperationResult:
        return self._run("update_material", lambda db: material_to_dict(
            materials.update_material(db, material_id, name=name, unit=unit, attributes=attributes)))

    def delete_material(self, material_id: str) -> OperationResult:
        def _delete(db: Session) -> dict:
            materials.delete_material(db, material_id)
            return {"id": material_id, "deleted": True}
        return self._run("delete_material", _delete)

    # Recipes

    def list_recipes(self, product_id: str | None = None, *, include_inactive: bool = False) -> OperationResult:
        return self._run("list_recipes", lambda db: [
            recipe_to_dict(r) for r in recipes.list_recipes(db, product_id=product_id, include_inactive=include_inactive)])

    def create_recipe(self, product_id: str, lines: list[tuple[str, Any]], *, name: str | None = None,
                      production_time_minutes: int | None = None) -> OperationResult:
        return self._run("create_recipe", lambda db: recipe_to_dict(recipes.create_recipe(
            db, product_id=product_id, name=name, lines=lines, production_time_minutes=production_time_minutes)))

    def update_recipe(self, recipe_id: str, *, name: str | None = None, lines: list[tuple[str, Any]] | None = None,
                      production_time_minutes: int | None = None) -> OperationResult:
        return self._run("update_recipe", lambda db: recipe_to_dict(recipes.update_recipe(
            db, recipe_id, name=name, lines=lines, production_time_minutes=production_time_minutes)))

    def delete_recipe(self, recipe_id: str) -> OperationResult:
        def _delete(db: Session) -> dict:
            recipes.delete_recipe(db, recipe_id)
            return {"id": recipe_id, "deleted": True}
        return self._run("delete_recipe", _delete)

    # Production

    def start_production(self, order_item_id: str, product_id: str, quantity) -> OperationResult:
        """Create (or reuse) the item's task, reserve its materials once, and start it.

        The material locks are held until the commit so no other reservation
        can plan against lots this one has consumed but not yet committed.
        """
        def _start(db: Session) -> dict:
            qty = positive(quantity)
            task = queue.active_task_for_item(db, order_item_id)
            bom = recipes.resolve_bom(db, task.product_id if task else product_id)
            with fifo.material_locks([line.material_id for line in bom or []]):
                if task is None:
                    task = queue.create_task(db, order_item_id, product_id, qty, commit=False)
                missing: list = []
                if not task.materials_reserved and not bom:
                    missing = [{"material_id": None, "material_name": f"Recipe missing for product {task.product_id}",
                                "required": task.quantity, "available": Decimal("0"), "shortage": task.quantity}]
                elif not task.materials_reserved:
                    reservation = fifo.reserve_materials(db, task.product_id, task.quantity,
                                                         production_task_id=task.id, commit=False)
                    if reservation.success:
                        task.materials_reserved = True
                        task.production_cost = reservation.total_cost
                        timeline.record_event(db, order_item_id, "materials_reserved",
                                              {"production_task_id": task.id, "total_cost": float(reservation.total_cost)})
                    else:
                        missing = [asdict(m) for m in reservation.missing_materials]
                task = queue.start_task(db, task.id, commit=False)
                db.commit()
            return {"task": task_to_dict(task), "materials_reserved": task.materials_reserved,
                    "missing_materials": missing}
        return self._run("start_production", _start)

    def complete_production(self, task_id: str, produced_quantity) -> OperationResult:
        return self._run("complete_production", lambda db: task_to_dict(
            queue.complete_task(db, task_id, produced_quantity, warehouse=self.warehouse)))

    def cancel_production(self, task_id: str, *, reason: str | None = None) -> OperationResult:
        return self._run("cancel_production", lambda db: task_to_dict(queue.cancel_task(db, task_id, reason=reason)))

    def delete_production_task(self, task_id: str) -> OperationResult:
        def _delete(db: Session) -> dict:
            queue.delete_task(db, task_id)
            return {"id": task_id, "deleted": True}
        return self._run("delete_production_task", _delete)

    def list_production_queue(self, *, status: str | None = None) -> OperationResult:
        return self._run("list_production_queue", lambda db: [task_to_dict(t) for t in queue.list_queue(db, status=status)])

    def get_production_cost_details(self, task_id: str) -> OperationResult:
        return self._run("get_production_cost_details",
                         lambda db: cost_to_dict(costing.get_production_cost_details(db, task_id)))

    def get_supplier_cost_summary(self) -> OperationResult:
        return self._run("get_supplier_cost_summary", lambda db: [asdict(s) for s in costing.supplier_cost_summary(db)])

    # Orders

    def decide_fulfillment(self, order_item_id: str) -> OperationResult:
        return self._run("decide_fulfillment",
                         lambda db: fulfillment.decide_fulfillment(db, order_item_id, warehouse=self.warehouse))

    def ship_order(self, order_id: str) -> OperationResult:
        return self._run("ship_order", lambda db: fulfillment.ship_order(db, order_id, warehouse=self.warehouse))

    def recalculate_order_status(self, order_id: str) -> OperationResult:
        return self._run("recalculate_order_status", lambda db: status.recalculate_order(db, order_id))

    def recalculate_all_order_statuses(self, *, stop: threading.Event | None = None) -> OperationResult:
        return self._run("recalculate_all_order_statuses", lambda db: status.recalculate_all(db, stop=stop))

    def mark_stale_orders_done(self, age: timedelta | None = None, *, stop: threading.Event | None = None) -> OperationResult:
        def _reap(db: Session) -> dict:
            summary = reaper.mark_stale_orders_done(db, age, stop=stop)
            return {"count": summary.count, "order_ids": summary.order_ids,
                    "cutoff": summary.cutoff, "interrupted": summary.interrupted}
        return self._run("mark_stale_orders_done", _reap)

    def get_order_timeline(self, order_id: str) -> OperationResult:
        return self._run("get_order_timeline", lambda db: timeline.get_order_timeline(db, order_id))

    # Inventory

    def adjust_inventory(self, product_id: str, delta, *, reason: str | None = None) -> OperationResult:
        return self._run("adjust_inventory", lambda db: inventory_to_dict(
            inventory.adjust(db, product_id, delta, warehouse=self.warehouse, reason=reason)))

    # Planning

    def get_material_deficits(self) -> OperationResult:
        return self._run("get_material_deficits", lambda db: [asdict(d) for d in planner.get_material_deficits(db)])

    def get_replenishment_needs(self) -> OperationResult:
        return self._run("get_replenishment_needs", lambda db: [asdict(i) for i in planner.get_replenishment_needs(db)])

    def create_replenishment_requests(self, items: list[tuple[str, Decimal]] | None = None,
                                      *, notes: str | None = None) -> OperationResult:
        return self._run("create_replenishment_requests", lambda db: [
            request_to_dict(r) for r in planner.create_replenishment_requests(db, items, notes=notes)])

    def list_replenishment_requests(self, *, status: str | None = None) -> OperationResult:
        return self._run("list_replenishment_requests",
                         lambda db: [request_to_dict(r) for r in planner.list_requests(db, status=status)])

    def mark_replenishment_ordered(self, request_id: str) -> OperationResult:
        return self._run("mark_replenishment_ordered", lambda db: request_to_dict(planner.mark_ordered(db, request_id)))

    def mark_replenishment_received(self, request_id: str, cost_per_unit, *, quantity=None,
                                    supplier: str | None = None) -> OperationResult:
        return self._run("mark_replenishment_received", lambda db: request_to_dict(planner.mark_received(
            db, request_id, cost_per_unit=cost_per_unit, quantity=quantity, supplier=supplier)))
