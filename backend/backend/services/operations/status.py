"""Operational status of an order, derived from its items.

Derivation is an ordered list of rules over item facts; the first rule that
matches decides the status. The order-flow status is a fixed, lossy projection
of the operational status shown to the outside world.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Sequence

import structlog
from sqlalchemy.orm import Session, selectinload

from app.core.errors import NotFound
from app.db.models.common import utcnow
from app.db.models.orders import (
    FulfillmentStatus,
    FulfillmentType,
    OperationalStatus,
    Order,
    OrderFlowStatus,
    TERMINAL_OPERATIONAL_STATUSES,
)
from app.events import bus
from services.operations.planner import materials_sufficient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ItemFacts:
    fulfillment_status: str
    fulfillment_type: str
    # Only evaluated for planned produce-on-demand items
    materials_sufficient: bool | None = None

    @property
    def awaits_production(self) -> bool:
        return (self.fulfillment_status == FulfillmentStatus.PLANNED.value
                and self.fulfillment_type == FulfillmentType.PRODUCE_ON_DEMAND.value)


def _blocked(items: Sequence[ItemFacts]) -> bool:
    return bool(items) and all(i.fulfillment_status == FulfillmentStatus.CANCELLED.value for i in items)


def _waiting_for_materials(items: Sequence[ItemFacts]) -> bool:
    return any(i.awaits_production and not i.materials_sufficient for i in items)


def _waiting_for_production(items: Sequence[ItemFacts]) -> bool:
    return any(i.awaits_production and i.materials_sufficient for i in items)


def _in_production(items: Sequence[ItemFacts]) -> bool:
    return any(i.fulfillment_status == FulfillmentStatus.IN_PRODUCTION.value for i in items)


def _live(items: Sequence[ItemFacts]) -> list[ItemFacts]:
    return [i for i in items if i.fulfillment_status != FulfillmentStatus.CANCELLED.value]


def _all_shipped(items: Sequence[ItemFacts]) -> bool:
    live = _live(items)
    return bool(live) and all(i.fulfillment_status == FulfillmentStatus.SHIPPED.value for i in live)


def _ready_to_ship(items: Sequence[ItemFacts]) -> bool:
    live = _live(items)
    return bool(live) and all(
        i.fulfillment_status in (FulfillmentStatus.READY.value, FulfillmentStatus.SHIPPED.value) for i in live
    )


@dataclass(frozen=True)
class StatusRule:
    name: str
    status: OperationalStatus
    matches: Callable[[Sequence[ItemFacts]], bool]


# Most blocking first. SHIPPED is checked before READY_TO_SHIP because
# "all shipped" is the narrower case of "all ready or shipped".
STATUS_RULES: tuple[StatusRule, ...] = (
    StatusRule("cancelled_without_active_items", OperationalStatus.BLOCKED, _blocked),
    StatusRule("planned_production_short_of_materials", OperationalStatus.WAITING_FOR_MATERIALS, _waiting_for_materials),
    StatusRule("planned_production_with_materials", OperationalStatus.WAITING_FOR_PRODUCTION, _waiting_for_production),
    StatusRule("item_in_production", OperationalStatus.IN_PRODUCTION, _in_production),
    StatusRule("all_items_shipped", OperationalStatus.SHIPPED, _all_shipped),
    StatusRule("all_items_ready_or_shipped", OperationalStatus.READY_TO_SHIP, _ready_to_ship),
)


def derive_operational_status(items: Sequence[ItemFacts]) -> OperationalStatus:
    for rule in STATUS_RULES:
        if rule.matches(items):
            return rule.status
    return OperationalStatus.PENDING


ORDER_FLOW_BY_OPERATIONAL: dict[str, OrderFlowStatus] = {
    OperationalStatus.READY_TO_SHIP.value: OrderFlowStatus.READY_TO_SHIP,
    OperationalStatus.WAITING_FOR_PRODUCTION.value: OrderFlowStatus.NEED_PRODUCTION,
    OperationalStatus.WAITING_FOR_MATERIALS.value: OrderFlowStatus.NEED_MATERIALS,
    OperationalStatus.IN_PRODUCTION.value: OrderFlowStatus.IN_PRODUCTION,
    OperationalStatus.SHIPPED.value: OrderFlowStatus.SHIPPED,
    OperationalStatus.DONE.value: OrderFlowStatus.DONE,
    OperationalStatus.CANCELLED.value: OrderFlowStatus.CANCELLED,
    OperationalStatus.BLOCKED.value: OrderFlowStatus.CANCELLED,
}


def map_to_order_flow(status: OperationalStatus | str) -> OrderFlowStatus:
    """Project an operational status onto the order-flow vocabulary. Unknown values map to NEW."""
    key = status.value if isinstance(status, OperationalStatus) else str(status)
    return ORDER_FLOW_BY_OPERATIONAL.get(key, OrderFlowStatus.NEW)


@dataclass
class StatusChange:
    order_id: str
    operational_status: str
    order_flow_status: str
    previous_status: str
    changed: bool


@dataclass
class SweepSummary:
    processed: int = 0
    changed: int = 0
    interrupted: bool = False


def collect_item_facts(db: Session, order: Order) -> list[ItemFacts]:
    facts = []
    for item in order.items:
        sufficient = None
        if (item.fulfillment_status == FulfillmentStatus.PLANNED.value
                and item.fulfillment_type == FulfillmentType.PRODUCE_ON_DEMAND.value):
            sufficient = materials_sufficient(db, item.product_id, item.quantity)
        facts.append(ItemFacts(item.fulfillment_status, item.fulfillment_type, sufficient))
    return facts


def apply_order_status(db: Session, order: Order) -> StatusChange:
    """Recompute and write the order's statuses in the current transaction."""
    previous = order.operational_status
    if previous in TERMINAL_OPERATIONAL_STATUSES:
        return StatusChange(order.id, previous, order.order_flow_status, previous, False)

    status = derive_operational_status(collect_item_facts(db, order))
    flow = map_to_order_flow(status)
    changed = status.value != previous or flow.value != order.order_flow_status
    if changed:
        order.operational_status = status.value
        order.order_flow_status = flow.value
        order.status_updated_at = utcnow()
        if status is OperationalStatus.SHIPPED and order.shipped_at is None:
            order.shipped_at = order.status_updated_at
        bus.publish(db, "orders.status_changed", {
            "order_id": order.id,
            "previous": previous,
            "operational_status": status.value,
            "order_flow_status": flow.value,
        })
        logger.info("orders.status_changed", order_id=order.id, previous=previous,
                    operational_status=status.value, order_flow_status=flow.value)
    return StatusChange(order.id, status.value, flow.value, previous, changed)


def _load_order(db: Session, order_id: str) -> Order:
    order = (db.query(Order)
             .options(selectinload(Order.items))
             .filter(Order.id == order_id)
             .first())
    if not order:
        raise NotFound("order", order_id)
    return order


def recalculate_order(db: Session, order_id: str, *, commit: bool = True) -> StatusChange:
    change = apply_order_status(db, _load_order(db, order_id))
    if commit:
        db.commit()
    else:
        db.flush()
    return change


def recalculate_all(db: Session, *, stop: threading.Event | None = None) -> SweepSummary:
    """Recompute every non-terminal order, committing one order at a time.

    Safe to run alongside single-order recalculations: each write is derived
    from the item state read in its own transaction.
    """
    summary = SweepSummary()
    order_ids = [oid for (oid,) in (db.query(Order.id)
                                    .filter(Order.operational_status.notin_(TERMINAL_OPERATIONAL_STATUSES))
                                    .order_by(Order.created_at.asc(), Order.id.asc())
                                    .all())]
    for order_id in order_ids:
        if stop is not None and stop.is_set():
            summary.interrupted = True
            break
        try:
            change = recalculate_order(db, order_id)
        except NotFound:
            # Deleted since the sweep started
            db.rollback()
            continue
        summary.processed += 1
        if change.changed:
            summary.changed += 1
    logger.info("orders.recalculated_all", processed=summary.processed, changed=summary.changed,
                interrupted=summary.interrupted)
    return summary
