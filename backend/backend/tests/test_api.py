from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from services.operations.api import get_operations, router
from services.operations.entrypoints import FulfillmentOperations


@pytest.fixture
def client(session_factory):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_operations] = lambda: FulfillmentOperations(session_factory)
    with TestClient(app) as c:
        yield c


class TestOperationsApi:
    def test_health(self, client):
        assert client.get("/operations/health").json() == {"ok": True}

    def test_start_and_complete_production(self, client, make_order):
        item = make_order([("SKU-1", 2)]).items[0]

        started = client.post("/operations/production/start",
                              json={"order_item_id": item.id, "product_id": "SKU-1", "quantity": 2})
        assert started.status_code == 200
        body = started.json()
        assert body["success"] is True
        task_id = body["data"]["task"]["id"]

        done = client.post(f"/operations/production/{task_id}/complete", json={"produced_quantity": 2})
        assert done.status_code == 200
        assert done.json()["data"]["status"] == "completed"

        again = client.post(f"/operations/production/{task_id}/complete", json={"produced_quantity": 2})
        assert again.status_code == 409
        assert again.json()["detail"]["error_kind"] == "invalid_transition"

    def test_missing_fields(self, client):
        resp = client.post("/operations/production/start", json={"order_item_id": "x"})
        assert resp.status_code == 400

    def test_unknown_task(self, client):
        resp = client.post("/operations/production/missing/cancel")
        assert resp.status_code == 404

    def test_negative_adjustment(self, client):
        resp = client.post("/operations/inventory/adjust", json={"product_id": "SKU-1", "delta": -1})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error_kind"] == "negative_stock"

    def test_ship_order_that_is_not_ready(self, client, make_order):
        order = make_order()
        resp = client.post(f"/operations/orders/{order.id}/ship")
        assert resp.status_code == 409

    def test_order_timeline(self, client, make_order):
        order = make_order()
        resp = client.get(f"/operations/orders/{order.id}/timeline")
        assert resp.status_code == 200
        assert resp.json()["data"] == []

    def test_deficit_report(self, client):
        resp = client.get("/operations/materials/deficits")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "data": [], "error": None, "error_kind": None, "retryable": False}

    def test_non_numeric_quantity(self, client):
        resp = client.post("/operations/materials/reserve", json={"product_id": "TABLE-1", "quantity": "lots"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["error_kind"] == "invalid_input"

    @pytest.mark.parametrize("age_days", ["soon", -1])
    def test_bad_stale_age(self, client, age_days):
        resp = client.post("/operations/orders/mark-stale-done", json={"age_days": age_days})
        assert resp.status_code == 400

    def test_recipe_and_cost_routes(self, client, make_material, add_lot, make_order):
        wood = make_material()
        add_lot(wood, 10, 3)
        created = client.post("/operations/recipes", json={
            "product_id": "TABLE-1", "lines": [{"material_id": wood.id, "quantity_required": 2}]})
        assert created.status_code == 200
        item = make_order([("TABLE-1", 1)]).items[0]
        task_id = client.post("/operations/production/start",
                              json={"order_item_id": item.id, "product_id": "TABLE-1", "quantity": 1}).json()["data"]["task"]["id"]

        cost = client.get(f"/operations/production/{task_id}/cost")
        lots = client.get("/operations/materials/lots", params={"material_id": wood.id})
        suppliers = client.get("/operations/production/analytics/suppliers")

        assert cost.status_code == 200
        assert Decimal(str(cost.json()["data"]["total_cost"])) == 6
        assert Decimal(str(lots.json()["data"][0]["quantity_remaining"])) == 8
        assert suppliers.json()["data"][0]["supplier"] == "unspecified"

    def test_recipe_line_without_quantity(self, client):
        resp = client.post("/operations/recipes", json={"product_id": "TABLE-1", "lines": [{"material_id": "m"}]})
        assert resp.status_code == 400
