import asyncio

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.db.session import get_db
from app.events.dispatcher import dispatch_batch
from services.admin.events_api import router
from services.inventory import ledger as inventory


@pytest.fixture
def client(session_factory):
    app = FastAPI()
    app.include_router(router)

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _db
    with TestClient(app) as c:
        yield c


class TestSubscriptions:
    def test_register_list_toggle_delete(self, client):
        created = client.post("/admin/events/subscriptions", json={
            "name": "erp", "topic_pattern": "orders.*", "target_url": "https://erp.test/hooks"})
        sub_id = created.json()["id"]

        listed = client.get("/admin/events/subscriptions").json()
        toggled = client.post(f"/admin/events/subscriptions/{sub_id}/toggle").json()
        deleted = client.delete(f"/admin/events/subscriptions/{sub_id}").json()

        assert [s["topic_pattern"] for s in listed] == ["orders.*"]
        assert listed[0]["is_active"] is True
        assert toggled["is_active"] is False
        assert deleted == {"ok": True, "deleted": True}
        assert client.get("/admin/events/subscriptions").json() == []

    @pytest.mark.parametrize("payload", [
        {"topic_pattern": "orders.*"},
        {"topic_pattern": "orders.*", "target_url": "ftp://erp.test"},
        {"topic_pattern": "orders.*", "target_url": "https://erp.test", "headers": ["x"]},
    ])
    def test_invalid_registration(self, client, payload):
        assert client.post("/admin/events/subscriptions", json=payload).status_code == 422

    def test_unknown_subscription(self, client):
        assert client.post("/admin/events/subscriptions/missing/toggle").status_code == 404

    def test_registered_hook_receives_fulfillment_events(self, client, db, session_factory):
        client.post("/admin/events/subscriptions", json={
            "name": "stock", "topic_pattern": "inventory.", "target_url": "https://erp.test/hooks"})
        inventory.adjust(db, "SKU-1", 3, reason="count")
        assert [e["topic"] for e in client.get("/admin/events/outbox").json()] == ["inventory.adjusted"]
        seen = []

        def handler(request):
            seen.append(request.url.host)
            return httpx.Response(204)

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                return await dispatch_batch(http, session_factory)

        assert asyncio.run(run()) == 1
        assert seen == ["erp.test"]
        assert client.get("/admin/events/outbox").json() == []

    def test_publish(self, client):
        published = client.post("/admin/events/publish", json={"topic": "orders.test", "payload": {"a": 1}}).json()

        assert published["topic"] == "orders.test"
        assert client.get("/admin/events/outbox").json()[0]["payload"] == {"a": 1}
