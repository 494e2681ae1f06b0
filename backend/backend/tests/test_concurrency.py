"""Concurrent reservations against the same lots, each thread with its own session."""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine

from app.db.base import Base
from app.db.models.materials import MaterialLot
from services.materials import fifo
from services.materials.ledger import available_quantity
from services.operations.entrypoints import FulfillmentOperations


@pytest.fixture
def engine(tmp_path):
    # A file database gives every session its own connection
    engine = create_engine(f"sqlite:///{tmp_path / 'fulfillment.db'}",
                           connect_args={"check_same_thread": False, "timeout": 30}, future=True)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def _race(n, target):
    barrier = threading.Barrier(n)
    results = [None] * n
    errors = []

    def run(i):
        try:
            barrier.wait()
            results[i] = target(i)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    assert not errors
    return results


class TestConcurrentReservation:
    def test_one_lot_is_never_allocated_twice(self, db, session_factory, make_material, add_lot, make_recipe):
        wood = make_material()
        add_lot(wood, 4, 1)
        make_recipe("TABLE-1", [(wood, 4)])

        def reserve(_):
            session = session_factory()
            try:
                return fifo.reserve_materials(session, "TABLE-1", 1).success
            finally:
                session.close()

        outcomes = _race(4, reserve)

        assert sorted(outcomes) == [False, False, False, True]
        db.expire_all()
        assert available_quantity(db, wood.id) == Decimal("0")

    def test_start_production_holds_materials_until_commit(self, db, session_factory, make_material, add_lot,
                                                           make_recipe, make_order):
        wood = make_material()
        lot = add_lot(wood, 4, 2)
        make_recipe("TABLE-1", [(wood, 2)])
        order = make_order([("TABLE-1", 2), ("TABLE-1", 2), ("TABLE-1", 2)])
        ops = FulfillmentOperations(session_factory)
        item_ids = [item.id for item in order.items]

        results = _race(3, lambda i: ops.start_production(item_ids[i], "TABLE-1", 2))

        assert all(r.success for r in results)
        assert sorted(r.data["materials_reserved"] for r in results) == [False, False, True]
        db.expire_all()
        assert db.get(MaterialLot, lot.id).quantity_remaining == Decimal("0")
