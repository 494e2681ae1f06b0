from decimal import Decimal

import pytest

from app.core.errors import NegativeStock, NotFound
from app.events.outbox import OutboxEvent
from services.inventory import ledger as inventory


class TestInventoryLedger:
    def test_adjust_creates_record(self, db):
        rec = inventory.adjust(db, "SKU-1", 5, reason="count")

        assert rec.quantity_in_stock == Decimal("5")
        assert inventory.available_quantity(db, "SKU-1") == Decimal("5")
        assert db.query(OutboxEvent).filter(OutboxEvent.topic == "inventory.adjusted").count() == 1

    def test_adjust_below_zero_is_rejected_and_leaves_stock(self, db):
        inventory.adjust(db, "SKU-1", 5)

        with pytest.raises(NegativeStock):
            inventory.adjust(db, "SKU-1", -10)

        db.rollback()
        assert inventory.get_record(db, "SKU-1").quantity_in_stock == Decimal("5")

    def test_removing_from_missing_record(self, db):
        with pytest.raises(NegativeStock):
            inventory.adjust(db, "SKU-404", -1)

    def test_cannot_reserve_more_than_stock(self, db):
        inventory.adjust(db, "SKU-1", 3)

        with pytest.raises(NegativeStock):
            inventory.reserve(db, "SKU-1", 4)

        rec = inventory.get_record(db, "SKU-1")
        assert rec.quantity_reserved == 0

    def test_adjust_cannot_drop_stock_below_reserved(self, db):
        inventory.adjust(db, "SKU-1", 5)
        inventory.reserve(db, "SKU-1", 4)
        db.commit()

        with pytest.raises(NegativeStock):
            inventory.adjust(db, "SKU-1", -2)

        assert inventory.available_quantity(db, "SKU-1") == Decimal("1")

    def test_reserve_release_and_issue(self, db):
        inventory.adjust(db, "SKU-1", 10)
        inventory.reserve(db, "SKU-1", 6)
        inventory.release(db, "SKU-1", 2)
        rec = inventory.issue_reserved(db, "SKU-1", 4)

        assert rec.quantity_in_stock == Decimal("6")
        assert rec.quantity_reserved == Decimal("0")

    def test_reserve_unknown_product(self, db):
        with pytest.raises(NotFound):
            inventory.reserve(db, "SKU-404", 1)
