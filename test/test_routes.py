import pytest
from fastapi.testclient import TestClient

from order_engine.main import create_app
from order_engine.models import DiscountType, Voucher
from conftest import OWNER_PIN


@pytest.fixture
def client(ctx):
    return TestClient(create_app(ctx))


@pytest.fixture
def order_id(client):
    response = client.post("/api/orders", json={"order_type": "takeaway"}, headers={"X-User-Id": "3"})
    assert response.status_code == 201
    return response.json()["data"]["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/health/db").json()["database"] == "connected"


def test_create_and_fetch_order(client, order_id):
    body = client.get(f"/api/orders/{order_id}").json()
    assert body["success"] is True
    assert body["data"]["status"] == "open"
    assert body["data"]["user_id"] == 3
    assert body["data"]["items"] == []

    listing = client.get("/api/orders", params={"status": "open"}).json()
    assert [o["id"] for o in listing["data"]] == [order_id]


def test_money_is_serialised_as_decimal_strings(client, order_id, products):
    response = client.post(f"/api/orders/{order_id}/items", json={"product_id": products["Pho Bo"].id, "quantity": 2})
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["subtotal"] == "2000"
    assert data["total"] == "2000"
    assert data["item"]["unit_price"] == "1000"


def test_open_item_then_note_then_remove(client, order_id):
    added = client.post(
        f"/api/orders/{order_id}/items",
        json={"kind": "open", "name": "Extra rice", "price": "200", "quantity": 1},
    ).json()["data"]
    item_id = added["item"]["id"]

    updated = client.put(f"/api/orders/{order_id}/items/{item_id}", json={"note": "no salt"}).json()
    assert updated["data"]["note"] == "no salt"

    removed = client.request("DELETE", f"/api/orders/{order_id}/items/{item_id}", json={"reason": "typo"})
    assert removed.status_code == 200
    assert removed.json()["data"]["subtotal"] == "0"


def test_validation_errors_use_envelope(client, order_id):
    response = client.post(f"/api/orders/{order_id}/items", json={"product_id": 1, "quantity": 0})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"

    response = client.post(f"/api/orders/{order_id}/discount", json={"type": "percent", "value": -5})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


def test_not_found_and_pin_errors(client, order_id):
    response = client.get("/api/orders/9999")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": {"code": "NOT_FOUND", "message": "Order not found"}}

    response = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "test"})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "PIN_REQUIRED"

    response = client.post(f"/api/orders/{order_id}/cancel", json={"pin": "000000"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_PIN"


def test_discount_and_pay_with_shortfall(client, order_id, products):
    client.post(f"/api/orders/{order_id}/items", json={"product_id": products["Pho Bo"].id, "quantity": 2})
    client.post(f"/api/orders/{order_id}/items", json={"name": "Extra rice", "price": 200})

    discounted = client.post(
        f"/api/orders/{order_id}/discount",
        json={"type": "percent", "value": 15, "pin": OWNER_PIN},
    ).json()["data"]
    assert discounted["discount_amount"] == "330"
    assert discounted["total"] == "1870"

    short = client.post(f"/api/orders/{order_id}/pay", json={"payments": [{"method": "cash", "amount": "1800"}]})
    assert short.status_code == 400
    assert short.json()["error"]["code"] == "INSUFFICIENT_PAYMENT"
    assert short.json()["error"]["shortfall"] == "70"

    paid = client.post(f"/api/orders/{order_id}/pay", json={"payments": [{"method": "cash", "amount": "1870"}]})
    assert paid.status_code == 200
    data = paid.json()["data"]
    assert data["status"] == "paid"
    assert data["payments"][0]["amount"] == "1870"

    again = client.post(f"/api/orders/{order_id}/pay", json={"payments": [{"method": "cash", "amount": "1870"}]})
    assert again.json()["error"]["code"] == "ALREADY_PAID"


def test_split_and_partial_pay(client, order_id, products):
    item_ids = []
    for name in ("Pho Bo", "Banh Xeo", "Lau Thai"):
        data = client.post(f"/api/orders/{order_id}/items", json={"product_id": products[name].id}).json()["data"]
        item_ids.append(data["item"]["id"])

    split = client.post(f"/api/orders/{order_id}/split", json={"item_ids": [item_ids[1]]}).json()["data"]
    assert split["order"]["subtotal"] == "4000"
    assert split["new_order"]["subtotal"] == "2000"

    partial = client.post(
        f"/api/orders/{order_id}/pay-partial",
        json={"item_ids": [item_ids[0]], "payments": [{"method": "card", "amount": "1000"}]},
    ).json()["data"]
    assert partial["is_partial"] is True
    assert partial["paid_order"]["status"] == "paid"
    assert partial["order"]["subtotal"] == "3000"


def test_kitchen_routes(client, order_id, products, broadcaster):
    item = client.post(
        f"/api/orders/{order_id}/items", json={"product_id": products["Pho Bo"].id}
    ).json()["data"]["item"]

    sent = client.post(f"/api/orders/{order_id}/send-to-kitchen").json()["data"]
    assert [i["id"] for i in sent["items"]] == [item["id"]]
    assert sent["items"][0]["kitchen_status"] == "preparing"

    ready = client.patch(f"/api/kitchen/items/{item['id']}/status", json={"status": "ready"}).json()["data"]
    assert ready["kitchen_status"] == "ready"
    assert "kitchen:item_ready" in broadcaster.events()

    bad = client.patch(f"/api/kitchen/items/{item['id']}/status", json={"status": "burnt"})
    assert bad.status_code == 400


def test_validate_voucher_route(client, seed):
    seed(Voucher(code="WELCOME", type=DiscountType.percent, value=10))
    ok = client.post("/api/vouchers/validate", json={"code": " welcome ", "order_total": "1500"}).json()
    assert ok["data"] == {"voucher_id": 1, "code": "WELCOME", "discount": "150"}

    missing = client.post("/api/vouchers/validate", json={"code": "NOPE", "order_total": "10"})
    assert missing.json()["error"]["code"] == "INVALID_VOUCHER"


def test_delete_empty_order_route(client, order_id):
    assert client.delete(f"/api/orders/{order_id}").json()["data"] == {"order_id": order_id}
    assert client.delete(f"/api/orders/{order_id}").status_code == 404


def test_shutdown_closes_alert_channel(ctx, alerts):
    with TestClient(create_app(ctx)) as client:
        assert client.get("/health").status_code == 200
        assert alerts.closed is False
    assert alerts.closed is True


def test_history_and_stats_routes(client, order_id, products):
    client.post(f"/api/orders/{order_id}/items", json={"product_id": products["Pho Bo"].id})
    client.post(f"/api/orders/{order_id}/pay", json={"payments": [{"method": "qr", "amount": "1000"}]})

    history = client.get("/api/orders/history", params={"payment_method": "qr"}).json()["data"]["orders"]
    assert [o["id"] for o in history] == [order_id]
    assert history[0]["payment_method"] == "qr"
    assert history[0]["total"] == "1000"
    assert client.get("/api/orders/history", params={"payment_method": "cash"}).json()["data"]["orders"] == []

    bad = client.get("/api/orders/history", params={"start_date": "yesterday"})
    assert bad.status_code == 400

    stats = client.get("/api/orders/stats").json()["data"]
    assert stats == {"open": 0, "paid": 1, "cancelled": 0, "today_revenue": "1000", "total_revenue": "1000"}
