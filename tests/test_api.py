from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import USER_ID, SHIPPING_ADDRESS
from marketplace_orders.main import app

HEADERS = {"X-User-Id": str(USER_ID)}


@pytest.fixture
def client(gateway):
    with TestClient(app) as client:
        app.state.gateway.close()
        app.state.gateway = gateway
        yield client


@pytest.fixture
def product(make_product):
    return make_product(price="500.00", stock=10)


def place_order(client, product_id, quantity=2):
    return client.post("/orders", headers=HEADERS, json={
        "products": [{"productId": product_id, "quantity": quantity}],
        "vendor": 7,
        "shippingAddress": SHIPPING_ADDRESS,
    })


def verify_body(gateway, created, payment_id="pay_test_1", signature=None):
    return {
        "orderId": created["orderId"],
        "gatewayPaymentId": payment_id,
        "gatewayOrderId": created["gatewayOrderId"],
        "signature": signature or gateway.sign(created["gatewayOrderId"], payment_id),
    }


def test_order_lifecycle_over_http(client, gateway, product):
    resp = place_order(client, product.id)
    assert resp.status_code == 201
    created = resp.json()
    assert Decimal(created["amount"]) == Decimal("1000.00")
    assert created["gatewayKey"] == "rzp_test_key"

    resp = client.post("/orders/verify-payment", json=verify_body(gateway, created))
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Payment verified successfully"
    assert body["order"]["status"] == "processing"
    assert body["order"]["paymentStatus"] == "captured"
    assert body["payment"]["paymentMethod"] == "upi"

    resp = client.put("/orders/status", json={
        "orderId": created["orderId"], "status": "shipped", "trackingNumber": "T1",
        "latitude": 28.7, "longitude": 77.1,
    })
    assert resp.status_code == 200
    assert resp.json()["trackingNumber"] == "T1"

    resp = client.get(f"/orders/{created['orderId']}/tracking")
    assert resp.status_code == 200
    tracking = resp.json()
    assert [e["status"] for e in tracking["trackingHistory"]] == ["pending", "processing", "shipped"]
    assert tracking["trackingHistory"][-1]["location"]["address"] == "123 Main St"

    resp = client.get("/orders", headers=HEADERS, params={"status": "shipped"})
    assert [o["id"] for o in resp.json()] == [created["orderId"]]

    resp = client.post("/orders/refund", json={"orderId": created["orderId"], "amount": "400.00"})
    assert resp.status_code == 200
    refund = resp.json()["refund"]
    assert Decimal(refund["amount"]) == Decimal("400.00")
    assert refund["status"] == "refunded"
    assert client.get(f"/orders/{created['orderId']}/tracking").json()["status"] == "returned"


def test_bad_signature_is_rejected(client, gateway, product):
    created = place_order(client, product.id).json()

    resp = client.post("/orders/verify-payment", json=verify_body(gateway, created, signature="forged"))

    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "verification_failed"
    assert body["retryable"] is False
    assert "stack" in body
    tracking = client.get(f"/orders/{created['orderId']}/tracking").json()
    assert tracking["status"] == "cancelled"
    assert tracking["paymentStatus"] == "failed"


def test_insufficient_stock_conflict(client, product):
    resp = place_order(client, product.id, quantity=11)

    assert resp.status_code == 409
    assert resp.json()["code"] == "insufficient_stock"


def test_gateway_outage_is_retryable(client, gateway, product):
    gateway.fail_create = True

    resp = place_order(client, product.id)

    assert resp.status_code == 503
    assert resp.json()["retryable"] is True
    assert resp.headers["Retry-After"] == "1"


def test_illegal_transition_conflict(client, product):
    created = place_order(client, product.id).json()

    resp = client.put("/orders/status", json={"orderId": created["orderId"], "status": "delivered"})

    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_status_transition"


def test_unknown_order_tracking(client):
    resp = client.get("/orders/9999/tracking")

    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


def test_caller_identity_is_required(client, product):
    resp = client.post("/orders", json={
        "products": [{"productId": product.id, "quantity": 1}],
        "vendor": 7,
        "shippingAddress": SHIPPING_ADDRESS,
    })

    assert resp.status_code == 422


@pytest.mark.parametrize("products", [[], [{"productId": 1, "quantity": 0}]])
def test_malformed_order_is_rejected(client, products):
    resp = client.post("/orders", headers=HEADERS, json={
        "products": products, "vendor": 7, "shippingAddress": SHIPPING_ADDRESS,
    })

    assert resp.status_code == 422


def test_notification_settings_round_trip(client):
    resp = client.get("/notifications/settings", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["pushNotifications"] is False

    resp = client.put("/notifications/settings", headers=HEADERS, json={"pushNotifications": True})
    assert resp.status_code == 200
    assert resp.json()["pushNotifications"] is True
    assert resp.json()["orderNotifications"] is True

    assert client.get("/notifications/settings", headers=HEADERS).json()["pushNotifications"] is True


def test_websocket_receives_order_notifications(client, product):
    client.put("/notifications/settings", headers=HEADERS, json={"pushNotifications": True})

    with client.websocket_connect(f"/ws/notifications/{USER_ID}") as websocket:
        created = place_order(client, product.id).json()

        first = websocket.receive_json()
        assert first["type"] == "notification"
        assert first["title"] == "Order Created"
        assert websocket.receive_json()["title"] == "Order Update: pending"
        update = websocket.receive_json()
        assert update == {
            "type": "delivery_update", "orderId": created["orderId"], "status": "pending", "location": None,
        }


def test_health_endpoints(client):
    assert client.get("/health").json()["status"] == "pass"
    assert client.get("/health/live").json() == {"status": "alive"}

    ready = client.get("/health/ready").json()
    assert ready["checks"]["database:connectivity"]["status"] == "pass"

    startup = client.get("/health/startup").json()
    assert startup["checks"]["config:environment"]["status"] == "pass"

    metrics = client.get("/metrics").json()
    assert metrics["service"] == "orders-service"
