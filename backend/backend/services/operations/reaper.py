from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy.orm import Session

from app.core.config import STALE_ORDER_AGE_DAYS
from app.db.models.common import utcnow
from app.db.models.orders import OperationalStatus, Order
from app.events import bus
from services.operations.status import map_to_order_flow

logger = structlog.get_logger(__name__)


@dataclass
class ReapSummary:
    cutoff: datetime
    order_ids: list[str] = field(default_factory=list)
    interrupted: bool = False

    @property
    def count(self) -> int:
        return len(self.order_ids)


def mark_stale_orders_done(db: Session, age: timedelta | None = None, *, now: datetime | None = None,
                           stop: threading.Event | None = None) -> ReapSummary:
    """SHIPPED orders shipped before now - age become DONE, one commit per order."""
    cutoff = (now or utcnow()) - (age if age is not None else timedelta(days=STALE_ORDER_AGE_DAYS))
    summary = ReapSummary(cutoff=cutoff)
    stale_ids = [oid for (oid,) in (db.query(Order.id)
                                    .filter(Order.operational_status == OperationalStatus.SHIPPED.value,
                                            Order.shipped_at.isnot(None),
                                            Order.shipped_at < cutoff)
                                    .order_by(Order.shipped_at.asc())
                                    .all())]
    for order_id in stale_ids:
        if stop is not None and stop.is_set():
            summary.interrupted = True
            break
        order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
        # Re-check: a concurrent writer may have moved it on
        if not order or order.operational_status != OperationalStatus.SHIPPED.value:
            db.rollback()
            continue
        order.operational_status = OperationalStatus.DONE.value
        order.order_flow_status = map_to_order_flow(OperationalStatus.DONE).value
        order.status_updated_at = utcnow()
        bus.publish(db, "orders.status_changed", {
            "order_id": order.id,
            "previous": OperationalStatus.SHIPPED.value,
            "operational_status": OperationalStatus.DONE.value,
            "order_flow_status": order.order_flow_status,
        })
        db.commit()
        summary.order_ids.append(order_id)
    logger.info("orders.stale_marked_done", count=summary.count, cutoff=cutoff.isoformat(), interrupted=summary.interrupted)
    return summary
