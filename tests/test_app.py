import threading
import time

import pytest
from fastapi.testclient import TestClient

from app import app
from db import MemoryStore
from engine import PriceEngine
from notifier import MemorySink


@pytest.fixture
def client(settings, clock):
    app.state.engine = PriceEngine(MemoryStore(), sink=MemorySink(), settings=settings, clock=clock)
    with TestClient(app) as c:
        yield c


def _product(client, product_id="p-1", name="Noise Cancelling Headphones"):
    resp = client.post("/api/products", json={"product_id": product_id, "name": name,
                                              "category": "electronics"})
    assert resp.status_code == 200
    return resp.json()


class TestProductsAndPrices:
    def test_register_and_list(self, client):
        assert _product(client)["category"] == "electronics"
        assert [p["product_id"] for p in client.get("/api/products").json()] == ["p-1"]

    def test_bad_category_is_rejected(self, client):
        resp = client.post("/api/products", json={"product_id": "x", "name": "X", "category": "cars"})
        assert resp.status_code == 422

    def test_record_price_and_history(self, client):
        _product(client)
        first = client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 249.99,
                                                      "timestamp": "2026-03-10T12:00:00+00:00"})
        assert first.json()["previous_lowest"] is None
        second = client.post("/api/prices/p-1", json={"retailer_id": "target", "price": 199.99,
                                                       "timestamp": "2026-03-10T13:00:00+00:00"})
        body = second.json()
        assert body["is_drop"] is True
        assert body["drop_percentage"] == 20.0
        assert body["point"]["retailer_id"] == "target"

        history = client.get("/api/prices/p-1").json()
        assert history["lowest"]["price"] == 199.99
        assert history["highest"]["price"] == 249.99
        assert len(history["points"]) == 2
        assert len(client.get("/api/prices/p-1?limit=1").json()["points"]) == 1

    def test_replayed_point(self, client):
        _product(client)
        obs = {"retailer_id": "amazon", "price": 10.0, "point_id": "obs-1"}
        assert client.post("/api/prices/p-1", json=obs).json()["recorded"] is True
        assert client.post("/api/prices/p-1", json=obs).json() == {"recorded": False}

    def test_negative_price_is_422(self, client):
        _product(client)
        resp = client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": -1})
        assert resp.status_code == 422
        assert "price" in resp.json()["detail"]

    def test_unknown_product_is_404(self, client):
        assert client.post("/api/prices/nope", json={"retailer_id": "amazon", "price": 1}).status_code == 404
        assert client.get("/api/prices/nope").status_code == 404


class TestTrackingAndAlerts:
    def test_deal_flow(self, client):
        _product(client)
        item = client.post("/api/tracking", json={"product_id": "p-1"}).json()
        assert item["is_active"] is True

        client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 249.99,
                                             "timestamp": "2026-03-10T12:00:00+00:00"})
        client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 199.99,
                                             "timestamp": "2026-03-10T13:00:00+00:00"})

        [alert] = client.get("/api/alerts?kind=deal").json()
        assert alert["savings"] == 50.0
        assert client.get("/api/alerts?kind=budget").json() == []

        digest = client.get("/api/digest").json()
        assert digest["deal_count"] == 1

        [rec] = client.get("/api/recommendations").json()
        assert rec["type"] == "price_drop"
        assert client.get("/api/recommendations?limit=0").json() == []

        events = client.get("/api/events?event_type=alert_raised").json()
        assert len(events) == 1

        stopped = client.delete(f"/api/tracking/{item['tracking_id']}").json()
        assert stopped["is_active"] is False
        assert client.get("/api/tracking").json() == []
        assert len(client.get("/api/tracking?active_only=false").json()) == 1

    def test_invalid_target_price(self, client):
        _product(client)
        assert client.post("/api/tracking", json={"product_id": "p-1", "target_price": 0}).status_code == 422

    def test_unknown_tracking_item(self, client):
        assert client.delete("/api/tracking/missing").status_code == 404


class TestBudget:
    def test_budget_lifecycle(self, client):
        assert client.get("/api/budget").status_code == 404
        assert client.post("/api/budget/spend", json={"amount": 5}).status_code == 422

        budget = client.put("/api/budget", json={"monthly_limit": 1000, "category_limits": {"food": 200}}).json()
        assert {t["key"] for t in budget["thresholds"]} == {"total:0.8", "total:1", "food:0.8", "food:1"}

        assert client.post("/api/budget/spend", json={"category": "groceries", "amount": 750}).json() == {"alerts": []}
        [alert] = client.post("/api/budget/spend", json={"category": "groceries", "amount": 70}).json()["alerts"]
        assert alert["threshold_key"] == "total:0.8"

        current = client.get("/api/budget").json()
        assert current["remaining"] == 180.0
        assert current["category_spending"] == {"groceries": 820.0}

        reset = client.post("/api/budget/rollover").json()
        assert reset["current_month_spending"] == 0.0
        assert not any(t["fired"] for t in reset["thresholds"])

    def test_invalid_limit(self, client):
        assert client.put("/api/budget", json={"monthly_limit": 0}).status_code == 422


class TestInventory:
    def test_inventory_flow(self, client):
        _product(client, "c-1", "Coffee Beans")
        created = client.post("/api/inventory", json={"product_id": "c-1", "current_quantity": 5,
                                                       "preferred_quantity": 6, "reorder_threshold": 2})
        assert created.json()["needs_reorder"] is False

        consumed = client.post("/api/inventory/c-1/consume", json={"quantity": 3}).json()
        assert consumed == {"product_id": "c-1", "current_quantity": 2, "needs_reorder": True}
        assert len(client.get("/api/alerts?kind=reorder").json()) == 1

        bought = client.post("/api/inventory/c-1/purchase", json={"quantity": 4}).json()
        assert bought["current_quantity"] == 6

        [status] = client.get("/api/inventory").json()
        assert status["stock_level"] == "good"
        assert status["color"] == "green"

    def test_over_consumption_is_422(self, client):
        _product(client, "c-1", "Coffee Beans")
        client.post("/api/inventory", json={"product_id": "c-1", "current_quantity": 1,
                                            "preferred_quantity": 6, "reorder_threshold": 2})
        assert client.post("/api/inventory/c-1/consume", json={"quantity": 2}).status_code == 422

    def test_inventory_for_unknown_product(self, client):
        resp = client.post("/api/inventory", json={"product_id": "nope", "current_quantity": 1,
                                                    "preferred_quantity": 6, "reorder_threshold": 2})
        assert resp.status_code == 404


class TestSettingsAndScheduler:
    def test_settings(self, client):
        settings = client.get("/api/settings").json()
        assert settings["scheduler_enabled"] is False
        assert settings["cache_ttl_hours"] == 24

    def test_scheduler_status(self, client):
        status = client.get("/api/scheduler/status").json()
        assert status["running"] is False
        assert status["next_run"] == "2026-03-11T03:00:00+00:00"

    def test_trigger(self, client):
        assert client.post("/api/scheduler/trigger").json() == {"status": "triggered"}


class TestAlertLifecycle:
    def _deal(self, client):
        _product(client)
        client.post("/api/tracking", json={"product_id": "p-1"})
        client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 249.99,
                                             "timestamp": "2026-03-10T12:00:00+00:00"})
        client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 199.99,
                                             "timestamp": "2026-03-10T13:00:00+00:00"})
        [alert] = client.get("/api/alerts").json()
        return alert

    def test_mark_read_then_clear(self, client):
        alert = self._deal(client)
        assert alert["read"] is False

        marked = client.post(f"/api/alerts/{alert['alert_id']}/read").json()
        assert marked["read"] is True
        assert client.get("/api/alerts?unread=true").json() == []
        assert client.get("/api/alerts").json()[0]["read"] is True

        assert client.delete("/api/alerts/read").json() == {"cleared": 1}
        assert client.get("/api/alerts").json() == []
        assert client.post(f"/api/alerts/{alert['alert_id']}/read").status_code == 404


class TestTimestamps:
    def test_offset_less_timestamps_are_utc(self, client):
        _product(client)
        client.post("/api/tracking", json={"product_id": "p-1"})
        first = client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 249.99,
                                                      "timestamp": "2026-03-10T10:00:00"})
        assert first.status_code == 200
        second = client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 199.99,
                                                       "timestamp": "2026-03-10T11:00:00"})
        assert second.status_code == 200
        assert second.json()["point"]["timestamp"].endswith("+00:00")

        digest = client.get("/api/digest")
        assert digest.status_code == 200
        assert digest.json()["deal_count"] == 1
        assert client.get("/api/recommendations").status_code == 200


class _BlockingSink:
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def deliver(self, title, body, target_key):
        self.entered.set()
        self.release.wait(5)
        return True


class TestConcurrency:
    def test_slow_delivery_does_not_block_other_requests(self, settings, clock):
        sink = _BlockingSink()
        app.state.engine = PriceEngine(MemoryStore(), sink=sink, settings=settings, clock=clock)
        with TestClient(app) as client:
            _product(client)
            client.post("/api/tracking", json={"product_id": "p-1"})
            client.post("/api/prices/p-1", json={"retailer_id": "amazon", "price": 249.99,
                                                 "timestamp": "2026-03-10T10:00:00+00:00"})

            slow = threading.Thread(target=client.post, args=("/api/prices/p-1",),
                                    kwargs={"json": {"retailer_id": "amazon", "price": 199.99,
                                                     "timestamp": "2026-03-10T11:00:00+00:00"}})
            slow.start()
            try:
                assert sink.entered.wait(2)
                started = time.monotonic()
                assert client.get("/api/digest").status_code == 200
                assert time.monotonic() - started < 2
            finally:
                sink.release.set()
                slow.join(5)
