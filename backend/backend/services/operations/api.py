from __future__ import annotations
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException

from app.db.session import SessionLocal
from services.operations.entrypoints import FulfillmentOperations, OperationResult

router = APIRouter(prefix="/operations", tags=["operations"])

STATUS_BY_KIND = {
    "not_found": 404,
    "invalid_transition": 409,
    "duplicate_active_task": 409,
    "negative_stock": 400,
    "invalid_input": 400,
    "persistence": 503,
    "internal": 500,
}


def get_operations() -> FulfillmentOperations:
    return FulfillmentOperations(SessionLocal)


def _respond(result: OperationResult) -> OperationResult:
    if not result.success:
        raise HTTPException(STATUS_BY_KIND.get(result.error_kind or "", 400),
                            {"error": result.error, "error_kind": result.error_kind, "retryable": result.retryable})
    return result


def _required(payload: dict, *keys: str) -> list:
    missing = [k for k in keys if payload.get(k) in (None, "")]
    if missing:
        raise HTTPException(400, f"{', '.join(missing)} required")
    return [payload[k] for k in keys]


@router.post("/materials/check")
def check_materials(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    product_id, quantity = _required(payload, "product_id", "quantity")
    return _respond(ops.check_materials(product_id, quantity))


@router.post("/materials/reserve")
def reserve_materials(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    product_id, quantity = _required(payload, "product_id", "quantity")
    return _respond(ops.reserve_materials(product_id, quantity, production_task_id=payload.get("production_task_id")))


@router.post("/materials/lots")
def receive_material_lot(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    material_id, quantity, cost = _required(payload, "material_id", "quantity", "cost_per_unit")
    return _respond(ops.receive_material_lot(material_id, quantity, cost, supplier=payload.get("supplier")))


@router.get("/materials")
def list_materials(ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.list_materials())


@router.post("/materials")
def create_material(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    (name,) = _required(payload, "name")
    return _respond(ops.create_material(name, unit=payload.get("unit") or "pcs", kind=payload.get("kind") or "blank",
                                        attributes=payload.get("attributes")))


@router.put("/materials/{material_id}")
def update_material(material_id: str, payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.update_material(material_id, name=payload.get("name"), unit=payload.get("unit"),
                                        attributes=payload.get("attributes")))


@router.delete("/materials/{material_id}")
def delete_material(material_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.delete_material(material_id))


@router.get("/materials/lots")
def list_material_lots(material_id: str | None = None, include_empty: bool = False,
                       ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.list_material_lots(material_id, include_empty=include_empty))


@router.post("/materials/lots/{lot_id}/adjust")
def adjust_material_lot(lot_id: str, payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    delta, reason = _required(payload, "delta", "reason")
    return _respond(ops.adjust_material_lot(lot_id, delta, reason=reason))


@router.get("/materials/deficits")
def material_deficits(ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.get_material_deficits())


@router.get("/replenishment/needs")
def replenishment_needs(ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.get_replenishment_needs())


@router.post("/replenishment/requests")
def create_replenishment_requests(payload: dict | None = None, ops: FulfillmentOperations = Depends(get_operations)):
    payload = payload or {}
    items = None
    if payload.get("items") is not None:
        items = [(ln["material_id"], ln["quantity"]) for ln in payload["items"]]
    return _respond(ops.create_replenishment_requests(items, notes=payload.get("notes")))


@router.get("/replenishment/requests")
def list_replenishment_requests(status: str | None = None, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.list_replenishment_requests(status=status))


@router.post("/replenishment/requests/{request_id}/ordered")
def mark_replenishment_ordered(request_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.mark_replenishment_ordered(request_id))


@router.post("/replenishment/requests/{request_id}/received")
def mark_replenishment_received(request_id: str, payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    (cost,) = _required(payload, "cost_per_unit")
    return _respond(ops.mark_replenishment_received(request_id, cost, quantity=payload.get("quantity"),
                                                    supplier=payload.get("supplier")))


def _recipe_lines(payload: dict) -> list | None:
    if payload.get("lines") is None:
        return None
    try:
        return [(ln["material_id"], ln["quantity_required"]) for ln in payload["lines"]]
    except (KeyError, TypeError):
        raise HTTPException(400, "each line needs material_id and quantity_required") from None


@router.get("/recipes")
def list_recipes(product_id: str | None = None, include_inactive: bool = False,
                 ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.list_recipes(product_id, include_inactive=include_inactive))


@router.post("/recipes")
def create_recipe(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    (product_id,) = _required(payload, "product_id")
    return _respond(ops.create_recipe(product_id, _recipe_lines(payload) or [], name=payload.get("name"),
                                      production_time_minutes=payload.get("production_time_minutes")))


@router.put("/recipes/{recipe_id}")
def update_recipe(recipe_id: str, payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.update_recipe(recipe_id, name=payload.get("name"), lines=_recipe_lines(payload),
                                      production_time_minutes=payload.get("production_time_minutes")))


@router.delete("/recipes/{recipe_id}")
def delete_recipe(recipe_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.delete_recipe(recipe_id))


@router.get("/production/queue")
def list_production_queue(status: str | None = None, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.list_production_queue(status=status))


@router.delete("/production/queue/{task_id}")
def delete_production_task(task_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.delete_production_task(task_id))


@router.get("/production/analytics/suppliers")
def supplier_costs(ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.get_supplier_cost_summary())


@router.get("/production/{task_id}/cost")
def production_cost(task_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.get_production_cost_details(task_id))


@router.post("/production/start")
def start_production(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    order_item_id, product_id, quantity = _required(payload, "order_item_id", "product_id", "quantity")
    return _respond(ops.start_production(order_item_id, product_id, quantity))


@router.post("/production/{task_id}/complete")
def complete_production(task_id: str, payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    (produced,) = _required(payload, "produced_quantity")
    return _respond(ops.complete_production(task_id, produced))


@router.post("/production/{task_id}/cancel")
def cancel_production(task_id: str, payload: dict | None = None, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.cancel_production(task_id, reason=(payload or {}).get("reason")))


@router.post("/order-items/{order_item_id}/decide")
def decide_fulfillment(order_item_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.decide_fulfillment(order_item_id))


@router.post("/orders/recalculate")
def recalculate_all(ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.recalculate_all_order_statuses())


@router.post("/orders/mark-stale-done")
def mark_stale_done(payload: dict | None = None, ops: FulfillmentOperations = Depends(get_operations)):
    age_days = (payload or {}).get("age_days")
    try:
        age = timedelta(days=float(age_days)) if age_days is not None else None
    except (TypeError, ValueError, OverflowError):
        raise HTTPException(400, f"age_days must be a number, got {age_days!r}") from None
    if age is not None and age.total_seconds() < 0:
        raise HTTPException(400, "age_days cannot be negative")
    return _respond(ops.mark_stale_orders_done(age))


@router.post("/orders/{order_id}/recalculate")
def recalculate_order(order_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.recalculate_order_status(order_id))


@router.post("/orders/{order_id}/ship")
def ship_order(order_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.ship_order(order_id))


@router.get("/orders/{order_id}/timeline")
def order_timeline(order_id: str, ops: FulfillmentOperations = Depends(get_operations)):
    return _respond(ops.get_order_timeline(order_id))


@router.post("/inventory/adjust")
def adjust_inventory(payload: dict, ops: FulfillmentOperations = Depends(get_operations)):
    product_id, delta = _required(payload, "product_id", "delta")
    return _respond(ops.adjust_inventory(product_id, delta, reason=payload.get("reason")))


@router.get("/health")
def health():
    return {"ok": True}
