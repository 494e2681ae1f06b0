"""Production task lifecycle and its cascade into items, stock and orders."""

from decimal import Decimal

import pytest

from app.core.errors import DuplicateActiveTask, InvalidTransition, NotFound
from app.db.models.orders import FulfillmentEvent, FulfillmentStatus, FulfillmentType, Order, OrderItem
from app.db.models.production import TaskStatus
from services.inventory import ledger as inventory
from services.production import queue


def _reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


class TestCreateTask:
    def test_create_puts_item_into_production(self, db, make_order):
        order = make_order([("TABLE-1", 2)])
        item = order.items[0]

        task = queue.create_task(db, item.id, "TABLE-1", 2)

        assert task.status == TaskStatus.PENDING.value
        assert task.due_date is not None
        item = _reload(db, OrderItem, item.id)
        assert item.fulfillment_status == FulfillmentStatus.IN_PRODUCTION.value
        assert item.fulfillment_type == FulfillmentType.PRODUCE_ON_DEMAND.value
        assert item.production_task_id == task.id
        assert _reload(db, Order, order.id).operational_status == "IN_PRODUCTION"

    def test_second_active_task_is_rejected(self, db, make_order):
        item = make_order([("TABLE-1", 1)]).items[0]
        first = queue.create_task(db, item.id, "TABLE-1", 1)

        with pytest.raises(DuplicateActiveTask) as exc:
            queue.create_task(db, item.id, "TABLE-1", 1)
        assert exc.value.task_id == first.id

    def test_rejects_non_positive_quantity(self, db, make_order):
        item = make_order().items[0]
        with pytest.raises(InvalidTransition):
            queue.create_task(db, item.id, "SKU-1", 0)

    def test_rejects_marketplace_fulfilled_item(self, db, make_order):
        order = make_order([("SKU-1", 1, {"fulfillment_type": FulfillmentType.FBO.value})], warehouse_type="FBO")
        with pytest.raises(InvalidTransition):
            queue.create_task(db, order.items[0].id, "SKU-1", 1)

    def test_unknown_item(self, db):
        with pytest.raises(NotFound):
            queue.create_task(db, "missing", "SKU-1", 1)


class TestTaskTransitions:
    def test_start_is_idempotent(self, db, make_order):
        item = make_order().items[0]
        task = queue.create_task(db, item.id, "SKU-1", 1)

        started = queue.start_task(db, task.id)
        first_started_at = started.started_at
        again = queue.start_task(db, task.id)

        assert again.status == TaskStatus.IN_PROGRESS.value
        assert again.started_at == first_started_at

    def test_pending_task_cannot_be_completed(self, db, make_order):
        item = make_order().items[0]
        task = queue.create_task(db, item.id, "SKU-1", 1)

        with pytest.raises(InvalidTransition):
            queue.complete_task(db, task.id, 1)

    def test_completion_stocks_goods_and_readies_order(self, db, make_order):
        order = make_order([("TABLE-1", 10)])
        item = order.items[0]
        task = queue.create_task(db, item.id, "TABLE-1", 10)
        queue.start_task(db, task.id)

        done = queue.complete_task(db, task.id, 10)

        assert done.status == TaskStatus.COMPLETED.value
        assert done.quantity_produced == Decimal("10")
        rec = inventory.get_record(db, "TABLE-1")
        assert rec.quantity_in_stock == Decimal("10")
        assert rec.quantity_reserved == Decimal("10")
        item = _reload(db, OrderItem, item.id)
        assert item.fulfillment_status == FulfillmentStatus.READY.value
        assert item.stock_reserved == Decimal("10")
        order = _reload(db, Order, order.id)
        assert order.operational_status == "READY_TO_SHIP"
        assert order.order_flow_status == "READY_TO_SHIP"

    def test_overproduction_stays_available(self, db, make_order):
        item = make_order([("TABLE-1", 2)]).items[0]
        task = queue.create_task(db, item.id, "TABLE-1", 2)
        queue.start_task(db, task.id)

        queue.complete_task(db, task.id, 5)

        assert inventory.available_quantity(db, "TABLE-1") == Decimal("3")

    def test_completed_task_is_terminal(self, db, make_order):
        item = make_order().items[0]
        task = queue.create_task(db, item.id, "SKU-1", 1)
        queue.start_task(db, task.id)
        queue.complete_task(db, task.id, 1)

        with pytest.raises(InvalidTransition):
            queue.cancel_task(db, task.id)
        with pytest.raises(InvalidTransition):
            queue.start_task(db, task.id)

    def test_cancel_returns_item_to_planning(self, db, make_order):
        order = make_order([("CHAIR-1", 1)])
        item = order.items[0]
        task = queue.create_task(db, item.id, "CHAIR-1", 1)

        cancelled = queue.cancel_task(db, task.id, reason="customer changed mind")

        assert cancelled.status == TaskStatus.CANCELLED.value
        assert cancelled.meta["cancel_reason"] == "customer changed mind"
        item = _reload(db, OrderItem, item.id)
        assert item.fulfillment_status == FulfillmentStatus.PLANNED.value
        assert item.production_task_id is None
        # No recipe for CHAIR-1, so materials can never be sufficient
        assert _reload(db, Order, order.id).operational_status == "WAITING_FOR_MATERIALS"

    def test_cancelled_item_can_get_a_new_task(self, db, make_order):
        item = make_order().items[0]
        task = queue.create_task(db, item.id, "SKU-1", 1)
        queue.cancel_task(db, task.id)

        again = queue.create_task(db, item.id, "SKU-1", 1)

        assert again.id != task.id

    def test_lifecycle_is_on_the_item_timeline(self, db, make_order):
        item = make_order().items[0]
        task = queue.create_task(db, item.id, "SKU-1", 1)
        queue.start_task(db, task.id)
        queue.complete_task(db, task.id, 1)

        types = {e.event_type for e in db.query(FulfillmentEvent).filter(FulfillmentEvent.order_item_id == item.id)}
        assert {"production_created", "production_started", "production_completed", "ready_for_shipping"} <= types


class TestDeleteTask:
    def test_pending_task_is_removed(self, db, make_order):
        order = make_order([("TABLE-1", 1)])
        item = order.items[0]
        task = queue.create_task(db, item.id, "TABLE-1", 1)
        task_id = task.id

        queue.delete_task(db, task_id)

        with pytest.raises(NotFound):
            queue.get_task(db, task_id)
        item = _reload(db, OrderItem, item.id)
        assert item.fulfillment_status == FulfillmentStatus.PLANNED.value
        assert item.production_task_id is None
        assert queue.active_task_for_item(db, item.id) is None

    def test_started_task_cannot_be_deleted(self, db, make_order):
        item = make_order().items[0]
        task = queue.create_task(db, item.id, "SKU-1", 1)
        queue.start_task(db, task.id)

        with pytest.raises(InvalidTransition):
            queue.delete_task(db, task.id)


class TestListQueue:
    def test_high_priority_first(self, db, make_order):
        order = make_order([("A", 1), ("B", 1)])
        low = queue.create_task(db, order.items[0].id, "A", 1, priority="low")
        high = queue.create_task(db, order.items[1].id, "B", 1, priority="high")

        assert [t.id for t in queue.list_queue(db)] == [high.id, low.id]
