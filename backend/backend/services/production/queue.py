"""Production queue: one task per order item being produced.

    pending -> in_progress -> completed
    pending | in_progress -> cancelled

completed and cancelled are terminal. An order item has at most one task in
a non-terminal state.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import structlog
from sqlalchemy import case
from sqlalchemy.orm import Session

from app.core.config import DEFAULT_WAREHOUSE, PRODUCTION_DUE_DAYS
from app.core.errors import DuplicateActiveTask, InvalidTransition, NotFound
from app.core.quantities import to_decimal
from app.db.models.common import utcnow
from app.db.models.orders import FulfillmentStatus, FulfillmentType, OrderItem
from app.db.models.production import ACTIVE_TASK_STATUSES, ProductionTask, TaskStatus
from services.fulfillment.events import record_event
from services.inventory import ledger as inventory
from services.operations.status import recalculate_order

logger = structlog.get_logger(__name__)

PRIORITIES = ("high", "normal", "low")


def _dec(x) -> Decimal:
    return to_decimal(x)


def get_task(db: Session, task_id: str, *, for_update: bool = True) -> ProductionTask:
    q = db.query(ProductionTask).filter(ProductionTask.id == task_id)
    if for_update:
        q = q.with_for_update()
    task = q.first()
    if not task:
        raise NotFound("production task", task_id)
    return task


def _get_item(db: Session, order_item_id: str) -> OrderItem:
    item = db.query(OrderItem).filter(OrderItem.id == order_item_id).with_for_update().first()
    if not item:
        raise NotFound("order item", order_item_id)
    return item


def active_task_for_item(db: Session, order_item_id: str) -> ProductionTask | None:
    return (db.query(ProductionTask)
            .filter(ProductionTask.order_item_id == order_item_id,
                    ProductionTask.status.in_(ACTIVE_TASK_STATUSES))
            .first())


def _finish(db: Session, item: OrderItem | None, commit: bool) -> None:
    db.flush()
    if item is not None:
        recalculate_order(db, item.order_id, commit=False)
    if commit:
        db.commit()


def create_task(db: Session, order_item_id: str, product_id: str, quantity, *, priority: str = "normal",
                commit: bool = True) -> ProductionTask:
    item = _get_item(db, order_item_id)
    qty = _dec(quantity)
    if qty <= 0:
        raise InvalidTransition(f"production quantity must be positive, got {qty}")
    if priority not in PRIORITIES:
        raise InvalidTransition(f"unknown priority {priority!r}")
    if item.fulfillment_status in (FulfillmentStatus.SHIPPED.value, FulfillmentStatus.CANCELLED.value):
        raise InvalidTransition(f"order item {order_item_id} is {item.fulfillment_status}")
    if item.fulfillment_type == FulfillmentType.FBO.value:
        raise InvalidTransition(f"order item {order_item_id} is fulfilled by the marketplace (FBO)")
    existing = active_task_for_item(db, order_item_id)
    if existing:
        raise DuplicateActiveTask(order_item_id, existing.id)

    task = ProductionTask(
        order_item_id=order_item_id,
        product_id=product_id,
        quantity=qty,
        status=TaskStatus.PENDING.value,
        priority=priority,
        due_date=utcnow() + timedelta(days=PRODUCTION_DUE_DAYS),
        materials_reserved=False,
        meta={},
    )
    db.add(task)
    db.flush()
    item.production_task_id = task.id
    item.fulfillment_type = FulfillmentType.PRODUCE_ON_DEMAND.value
    item.fulfillment_source = "PRODUCTION"
    item.fulfillment_status = FulfillmentStatus.IN_PRODUCTION.value
    record_event(db, order_item_id, "production_created",
                 {"production_task_id": task.id, "product_id": product_id, "quantity": float(qty), "priority": priority})
    _finish(db, item, commit)
    logger.info("production.task_created", task_id=task.id, order_item_id=order_item_id, product_id=product_id, quantity=str(qty))
    return task


def start_task(db: Session, task_id: str, *, commit: bool = True) -> ProductionTask:
    """pending -> in_progress. Starting a task that is already running is a no-op."""
    task = get_task(db, task_id)
    if task.status == TaskStatus.IN_PROGRESS.value:
        return task
    if task.status != TaskStatus.PENDING.value:
        raise InvalidTransition(f"cannot start production task {task_id} in status {task.status}")
    task.status = TaskStatus.IN_PROGRESS.value
    task.started_at = utcnow()
    item = db.query(OrderItem).filter(OrderItem.id == task.order_item_id).first()
    if item is not None:
        record_event(db, item.id, "production_started", {"production_task_id": task.id})
    _finish(db, item, commit)
    logger.info("production.task_started", task_id=task.id, materials_reserved=task.materials_reserved)
    return task


def complete_task(db: Session, task_id: str, produced_quantity, *, warehouse: str = DEFAULT_WAREHOUSE,
                  commit: bool = True) -> ProductionTask:
    """in_progress -> completed; credits finished goods and marks the item ready."""
    task = get_task(db, task_id)
    if task.status != TaskStatus.IN_PROGRESS.value:
        raise InvalidTransition(f"cannot complete production task {task_id} in status {task.status}")
    produced = _dec(produced_quantity)
    if produced <= 0:
        raise InvalidTransition(f"produced quantity must be positive, got {produced}")

    task.status = TaskStatus.COMPLETED.value
    task.completed_at = utcnow()
    task.quantity_produced = produced
    inventory.credit(db, task.product_id, produced, warehouse=warehouse)

    item = db.query(OrderItem).filter(OrderItem.id == task.order_item_id).with_for_update().first()
    if item is not None:
        # Hold the produced goods for the item that ordered them
        hold = min(produced, _dec(item.quantity))
        inventory.reserve(db, task.product_id, hold, warehouse=warehouse)
        item.stock_reserved = _dec(item.stock_reserved or 0) + hold
        item.fulfillment_status = FulfillmentStatus.READY.value
        record_event(db, item.id, "production_completed",
                     {"production_task_id": task.id, "quantity_produced": float(produced), "warehouse": warehouse})
        record_event(db, item.id, "ready_for_shipping", {"reserved": float(hold)})
    _finish(db, item, commit)
    logger.info("production.task_completed", task_id=task.id, product_id=task.product_id, produced=str(produced))
    return task


def cancel_task(db: Session, task_id: str, *, reason: str | None = None, commit: bool = True) -> ProductionTask:
    """Cancel a pending or running task. Consumed materials stay consumed."""
    task = get_task(db, task_id)
    if task.status not in ACTIVE_TASK_STATUSES:
        raise InvalidTransition(f"cannot cancel production task {task_id} in status {task.status}")
    task.status = TaskStatus.CANCELLED.value
    task.cancelled_at = utcnow()
    if reason:
        task.meta = {**(task.meta or {}), "cancel_reason": reason}

    item = db.query(OrderItem).filter(OrderItem.id == task.order_item_id).with_for_update().first()
    if item is not None:
        item.fulfillment_status = FulfillmentStatus.PLANNED.value
        if item.production_task_id == task.id:
            item.production_task_id = None
        record_event(db, item.id, "production_cancelled",
                     {"production_task_id": task.id, "materials_reserved": task.materials_reserved, "reason": reason})
    _finish(db, item, commit)
    logger.info("production.task_cancelled", task_id=task.id, materials_sunk=task.materials_reserved, reason=reason)
    return task


def delete_task(db: Session, task_id: str, *, commit: bool = True) -> None:
    """Remove a task that never started; its item goes back to planned."""
    task = get_task(db, task_id)
    if task.status != TaskStatus.PENDING.value:
        raise InvalidTransition(f"only pending production tasks can be deleted; {task_id} is {task.status}")
    if task.materials_reserved:
        raise InvalidTransition(f"production task {task_id} already consumed materials; cancel it instead")
    item = db.query(OrderItem).filter(OrderItem.id == task.order_item_id).with_for_update().first()
    if item is not None:
        if item.production_task_id == task.id:
            item.production_task_id = None
        item.fulfillment_status = FulfillmentStatus.PLANNED.value
        record_event(db, item.id, "production_deleted", {"production_task_id": task.id})
    db.delete(task)
    _finish(db, item, commit)
    logger.info("production.task_deleted", task_id=task_id)


def list_queue(db: Session, *, status: str | None = None, limit: int = 200) -> list[ProductionTask]:
    rank = case({"high": 0, "normal": 1, "low": 2}, value=ProductionTask.priority, else_=3)
    q = db.query(ProductionTask)
    if status:
        q = q.filter(ProductionTask.status == status)
    else:
        q = q.filter(ProductionTask.status.in_(ACTIVE_TASK_STATUSES))
    return q.order_by(rank, ProductionTask.created_at.asc()).limit(limit).all()
