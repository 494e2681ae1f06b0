"""FIFO consumption of material lots and all-or-nothing recipe reservation."""

from datetime import datetime
from decimal import Decimal

import pytest

from app.core.errors import InvalidInput, NegativeStock, NotFound
from app.db.models.materials import MaterialLot, MaterialMovement, MovementType
from app.events.outbox import OutboxEvent
from services.materials.fifo import check_materials, fifo_reserve, plan_fifo, reserve_materials
from services.materials.ledger import adjust_lot, available_quantity, fifo_lots


def _remaining(db, lot):
    db.expire_all()
    return db.get(MaterialLot, lot.id).quantity_remaining


class TestFifoReserve:
    def test_oldest_lot_is_consumed_first(self, db, make_material, add_lot):
        m = make_material()
        old = add_lot(m, 5, 10, days=0)
        new = add_lot(m, 5, 20, days=1)

        result = fifo_reserve(db, m.id, 7)

        assert result.fulfilled_quantity == Decimal("7")
        assert result.total_cost == Decimal("90")
        assert result.shortage == 0
        assert [c.lot_id for c in result.consumed_lots] == [old.id, new.id]
        assert _remaining(db, old) == 0
        assert _remaining(db, new) == 3

    def test_shortage_consumes_everything_available(self, db, make_material, add_lot):
        m = make_material()
        add_lot(m, 4, 1, days=0)
        add_lot(m, 3, 2, days=1)

        result = fifo_reserve(db, m.id, 20)

        assert result.fulfilled_quantity == Decimal("7")
        assert result.shortage == Decimal("13")
        assert not result.satisfied
        assert available_quantity(db, m.id) == 0

    def test_same_receipt_time_breaks_tie_on_lot_id(self, db, make_material, add_lot):
        m = make_material()
        stamp = datetime(2026, 3, 1, 12, 0, 0)
        a = add_lot(m, 2, 1, received_at=stamp)
        b = add_lot(m, 2, 1, received_at=stamp)
        first, second = sorted([a, b], key=lambda lot: lot.id)

        fifo_reserve(db, m.id, 1)

        assert _remaining(db, first) == 1
        assert _remaining(db, second) == 2

    def test_consumption_is_recorded_as_movements(self, db, make_material, add_lot):
        m = make_material()
        add_lot(m, 5, 10, days=0)
        add_lot(m, 5, 20, days=1)

        fifo_reserve(db, m.id, 7, production_task_id="task-1")

        moves = (db.query(MaterialMovement)
                 .filter(MaterialMovement.movement_type == MovementType.CONSUME.value)
                 .all())
        assert len(moves) == 2
        assert sum(Decimal(str(mv.qty)) for mv in moves) == Decimal("-7")
        assert {mv.production_task_id for mv in moves} == {"task-1"}

    def test_unknown_material(self, db):
        with pytest.raises(NotFound):
            fifo_reserve(db, "missing", 1)

    def test_empty_lots_are_skipped(self, db, make_material, add_lot):
        m = make_material()
        add_lot(m, 2, 5, days=0)
        fifo_reserve(db, m.id, 2)
        add_lot(m, 2, 7, days=1)

        result = fifo_reserve(db, m.id, 1)

        assert result.total_cost == Decimal("7")
        assert len(fifo_lots(db, m.id)) == 1


class TestPlanFifo:
    def test_plan_does_not_touch_lots(self, db, make_material, add_lot):
        m = make_material()
        lot = add_lot(m, 5, 3)

        plan = plan_fifo(m.id, fifo_lots(db, m.id), 4)

        assert plan.total_cost == Decimal("12")
        assert _remaining(db, lot) == 5


class TestRecipeReservation:
    def test_reserves_every_material(self, db, make_material, add_lot, make_recipe):
        wood = make_material("Oak blank")
        oil = make_material("Finishing oil", unit="ml")
        add_lot(wood, 10, 2)
        add_lot(oil, 100, Decimal("0.5"))
        make_recipe("BOARD-1", [(wood, 2), (oil, 10)])

        outcome = reserve_materials(db, "BOARD-1", 3)

        assert outcome.success
        assert outcome.missing_materials == []
        assert outcome.total_cost == Decimal("27")
        assert available_quantity(db, wood.id) == 4
        assert available_quantity(db, oil.id) == 70

    def test_shortfall_consumes_nothing(self, db, make_material, add_lot, make_recipe):
        wood = make_material("Oak blank")
        oil = make_material("Finishing oil", unit="ml")
        wood_lot = add_lot(wood, 10, 2)
        make_recipe("BOARD-1", [(wood, 2), (oil, 1)])

        outcome = reserve_materials(db, "BOARD-1", 3)

        assert not outcome.success
        assert outcome.reservations == []
        assert [m.material_id for m in outcome.missing_materials] == [oil.id]
        assert outcome.missing_materials[0].shortage == Decimal("3")
        assert _remaining(db, wood_lot) == 10
        assert db.query(MaterialMovement).filter(MaterialMovement.movement_type == MovementType.CONSUME.value).count() == 0

    def test_repeated_material_lines_are_merged(self, db, make_material, add_lot, make_recipe):
        wood = make_material()
        add_lot(wood, 5, 1)
        make_recipe("BOARD-2", [(wood, 2), (wood, 1)])

        outcome = reserve_materials(db, "BOARD-2", 2)

        assert not outcome.success
        assert outcome.missing_materials[0].required == Decimal("6")

    def test_check_is_a_dry_run(self, db, make_material, add_lot, make_recipe):
        wood = make_material()
        add_lot(wood, 5, 4)
        make_recipe("BOARD-1", [(wood, 1)])

        outcome = check_materials(db, "BOARD-1", 2)

        assert outcome.success
        assert outcome.total_cost == Decimal("8")
        assert available_quantity(db, wood.id) == 5

    def test_product_without_recipe(self, db):
        with pytest.raises(NotFound):
            reserve_materials(db, "NO-RECIPE", 1)


class TestLotAdjustment:
    def test_adjustment_writes_a_movement(self, db, make_material, add_lot):
        m = make_material()
        lot = add_lot(m, 10, 2, days=0)

        adjust_lot(db, lot.id, -3, reason="damaged")

        assert _remaining(db, lot) == 7
        moves = db.query(MaterialMovement).filter(MaterialMovement.lot_id == lot.id,
                                                  MaterialMovement.movement_type == MovementType.ADJUST.value).all()
        assert len(moves) == 1
        assert moves[0].qty == Decimal("-3")
        assert moves[0].reason == "damaged"

    def test_lot_never_goes_negative(self, db, make_material, add_lot):
        m = make_material()
        lot = add_lot(m, 2, 1, days=0)

        with pytest.raises(NegativeStock):
            adjust_lot(db, lot.id, -5, reason="count")
        db.rollback()

        assert _remaining(db, lot) == 2


class TestQuantityValidation:
    @pytest.mark.parametrize("quantity", [0, -3, "abc"])
    def test_single_material_rejects_bad_quantity(self, db, make_material, add_lot, quantity):
        m = make_material()
        lot = add_lot(m, 5, 1)

        with pytest.raises(InvalidInput):
            fifo_reserve(db, m.id, quantity)

        assert _remaining(db, lot) == 5

    @pytest.mark.parametrize("quantity", [0, -3])
    def test_recipe_rejects_non_positive_quantity(self, db, make_material, add_lot, make_recipe, quantity):
        m = make_material()
        lot = add_lot(m, 5, 1)
        make_recipe("TABLE-1", [(m, 1)])

        with pytest.raises(InvalidInput):
            reserve_materials(db, "TABLE-1", quantity)
        with pytest.raises(InvalidInput):
            check_materials(db, "TABLE-1", quantity)

        assert _remaining(db, lot) == 5
        assert db.query(OutboxEvent).filter(OutboxEvent.topic == "materials.reserved").count() == 0
