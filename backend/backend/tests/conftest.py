from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.orders import Order, OrderItem
from services.materials.ledger import create_material, receive_lot
from services.production.recipes import create_recipe


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_material(db):
    def _make(name="Oak blank", unit="pcs"):
        return create_material(db, name=name, unit=unit)
    return _make


@pytest.fixture
def add_lot(db):
    base = datetime(2026, 1, 1, 8, 0, 0)

    def _add(material, quantity, cost_per_unit, *, days=0, received_at=None):
        return receive_lot(db, material_id=material.id, quantity=Decimal(str(quantity)),
                           cost_per_unit=Decimal(str(cost_per_unit)),
                           received_at=received_at or base + timedelta(days=days))
    return _add


@pytest.fixture
def make_recipe(db):
    def _make(product_id, lines):
        return create_recipe(db, product_id=product_id, lines=[(m.id, q) for m, q in lines])
    return _make


@pytest.fixture
def make_order(db):
    counter = {"n": 0}

    def _make(items=(("SKU-1", 1),), *, warehouse_type="FBS", **order_fields):
        counter["n"] += 1
        order = Order(order_number=f"ORD-{counter['n']:04d}", warehouse_type=warehouse_type, meta={}, **order_fields)
        db.add(order)
        db.flush()
        for pos, line in enumerate(items):
            product_id, qty = line[0], line[1]
            extra = line[2] if len(line) > 2 else {}
            db.add(OrderItem(order_id=order.id, product_id=product_id, quantity=Decimal(str(qty)), position=pos, **extra))
        db.commit()
        db.refresh(order)
        return order
    return _make
