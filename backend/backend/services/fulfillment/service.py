"""Deciding how an order item is fulfilled, and shipping orders."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

import structlog
from sqlalchemy.orm import Session, selectinload

from app.core.config import DEFAULT_WAREHOUSE
from app.core.errors import InvalidTransition, NotFound
from app.db.models.common import utcnow
from app.db.models.orders import FulfillmentStatus, FulfillmentType, OperationalStatus, Order, OrderItem
from services.fulfillment.events import record_event
from services.inventory import ledger as inventory
from services.materials.fifo import MissingMaterial
from services.operations.status import StatusChange, apply_order_status
from services.production.recipes import required_materials, resolve_bom
from services.materials.ledger import available_quantity as material_available

logger = structlog.get_logger(__name__)


@dataclass
class FulfillmentDecision:
    order_item_id: str
    type: str
    source: str
    can_fulfill: bool
    reason: str
    required_quantity: Decimal
    available_stock: Decimal = Decimal("0")
    needs_production: bool = False
    has_materials: bool | None = None
    missing_materials: list[MissingMaterial] = field(default_factory=list)


def _production_feasibility(db: Session, product_id: str, quantity: Decimal) -> tuple[bool, list[MissingMaterial]]:
    """Whether the product has a usable recipe, and what a run of `quantity` would lack."""
    bom = resolve_bom(db, product_id)
    if not bom:
        return False, []
    missing = []
    for material_id, (name, required) in required_materials(bom, quantity).items():
        have = material_available(db, material_id)
        if have < required:
            missing.append(MissingMaterial(material_id=material_id, material_name=name,
                                           required=required, available=have, shortage=required - have))
    return True, missing


def decide_fulfillment(db: Session, order_item_id: str, *, warehouse: str = DEFAULT_WAREHOUSE) -> FulfillmentDecision:
    """Pick FBO, READY_STOCK or PRODUCE_ON_DEMAND for a planned item and apply it."""
    item = db.query(OrderItem).filter(OrderItem.id == order_item_id).with_for_update().first()
    if not item:
        raise NotFound("order item", order_item_id)
    if item.fulfillment_status != FulfillmentStatus.PLANNED.value:
        raise InvalidTransition(f"order item {order_item_id} is {item.fulfillment_status}; fulfillment already decided")
    order = item.order
    qty = Decimal(str(item.quantity))

    if order.warehouse_type == "FBO":
        decision = FulfillmentDecision(order_item_id, FulfillmentType.FBO.value, "OZON_FBO", True,
                                       "fulfilled from the marketplace warehouse (FBO)", qty)
    else:
        available = inventory.available_quantity(db, item.product_id, warehouse)
        if available >= qty:
            decision = FulfillmentDecision(order_item_id, FulfillmentType.READY_STOCK.value, warehouse, True,
                                           f"in stock (available {available}, required {qty})", qty,
                                           available_stock=available)
        else:
            has_recipe, missing = _production_feasibility(db, item.product_id, qty)
            if not has_recipe:
                reason = "production required but no recipe is defined"
            elif missing:
                reason = "production required; materials are short"
            else:
                reason = "production required; all materials available"
            decision = FulfillmentDecision(order_item_id, FulfillmentType.PRODUCE_ON_DEMAND.value, "PRODUCTION",
                                           has_recipe, reason, qty, available_stock=available,
                                           needs_production=True, has_materials=has_recipe and not missing,
                                           missing_materials=missing)

    item.fulfillment_type = decision.type
    item.fulfillment_source = decision.source
    item.fulfillment_notes = decision.reason
    item.fulfillment_decided_at = utcnow()
    if decision.type == FulfillmentType.READY_STOCK.value:
        inventory.reserve(db, item.product_id, qty, warehouse=warehouse)
        item.stock_reserved = Decimal(str(item.stock_reserved or 0)) + qty
        item.fulfillment_status = FulfillmentStatus.READY.value
    record_event(db, item.id, "scenario_decided", {
        "decision_type": decision.type,
        "decision_source": decision.source,
        "can_fulfill": decision.can_fulfill,
        "needs_production": decision.needs_production,
        "has_materials": decision.has_materials,
        "missing_materials": [m.material_id for m in decision.missing_materials],
    })
    db.flush()
    apply_order_status(db, order)
    db.commit()
    logger.info("fulfillment.decided", order_item_id=order_item_id, type=decision.type, can_fulfill=decision.can_fulfill)
    return decision


def ship_order(db: Session, order_id: str, *, warehouse: str = DEFAULT_WAREHOUSE) -> StatusChange:
    """Ship every live item, issue its reserved stock, and recompute the order."""
    order = (db.query(Order).options(selectinload(Order.items))
             .filter(Order.id == order_id).with_for_update().first())
    if not order:
        raise NotFound("order", order_id)
    if order.operational_status in (OperationalStatus.SHIPPED.value, OperationalStatus.DONE.value,
                                    OperationalStatus.CANCELLED.value):
        raise InvalidTransition(f"order {order_id} is already {order.operational_status}")
    live = [i for i in order.items if i.fulfillment_status != FulfillmentStatus.CANCELLED.value]
    if not live:
        raise InvalidTransition(f"order {order_id} has nothing to ship")
    not_ready = [i.id for i in live if i.fulfillment_status not in (FulfillmentStatus.READY.value, FulfillmentStatus.SHIPPED.value)]
    if not_ready:
        raise InvalidTransition(f"order {order_id} has items that are not ready: {', '.join(not_ready)}")

    for item in live:
        if item.fulfillment_status == FulfillmentStatus.SHIPPED.value:
            continue
        reserved = Decimal(str(item.stock_reserved or 0))
        if reserved > 0 and item.fulfillment_type != FulfillmentType.FBO.value:
            inventory.issue_reserved(db, item.product_id, reserved, warehouse=warehouse)
            item.stock_reserved = Decimal("0")
        item.fulfillment_status = FulfillmentStatus.SHIPPED.value
        record_event(db, item.id, "shipped", {"order_id": order_id, "issued": float(reserved)})
    order.shipped_at = utcnow()
    db.flush()
    change = apply_order_status(db, order)
    db.commit()
    logger.info("fulfillment.order_shipped", order_id=order_id, items=len(live), operational_status=change.operational_status)
    return change
