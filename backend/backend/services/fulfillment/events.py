from __future__ import annotations

from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.db.models.orders import FulfillmentEvent, Order, OrderItem
from app.events import bus

EVENT_TYPES = (
    "scenario_decided",
    "production_created",
    "materials_reserved",
    "production_started",
    "production_completed",
    "production_cancelled",
    "ready_for_shipping",
    "shipped",
)


def record_event(db: Session, order_item_id: str, event_type: str, event_data: dict | None = None,
                 *, created_by: str = "system") -> FulfillmentEvent:
    """Append to the item's timeline and publish the same fact to the outbox."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown fulfillment event type: {event_type}")
    data = event_data or {}
    evt = FulfillmentEvent(order_item_id=order_item_id, event_type=event_type, event_data=data, created_by=created_by)
    db.add(evt)
    bus.publish(db, f"fulfillment.{event_type}", {"order_item_id": order_item_id, **data})
    return evt


def get_order_timeline(db: Session, order_id: str) -> list[dict]:
    if not db.query(Order.id).filter(Order.id == order_id).first():
        raise NotFound("order", order_id)
    rows = (db.query(FulfillmentEvent, OrderItem.product_id)
            .join(OrderItem, OrderItem.id == FulfillmentEvent.order_item_id)
            .filter(OrderItem.order_id == order_id)
            .order_by(FulfillmentEvent.created_at.asc())
            .all())
    return [{
        "id": e.id,
        "order_item_id": e.order_item_id,
        "product_id": product_id,
        "event_type": e.event_type,
        "event_data": e.event_data or {},
        "created_by": e.created_by,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    } for e, product_id in rows]
