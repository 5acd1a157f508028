"""Tests for the FastAPI API."""

import pytest

from conftest import ADMIN_HEADERS, CUSTOMER_HEADERS, OTHER_CUSTOMER_HEADERS


@pytest.fixture
def api_product(api_client):
    response = api_client.post(
        "/api/products",
        json={"name": "Widget", "price": "5.00", "stock": 10},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    return response.json()["product"]


@pytest.fixture
def api_order(api_client, api_product):
    response = api_client.post(
        "/api/orders",
        json={
            "items": [{"product_id": api_product["id"], "quantity": 3}],
            "payment_method": "paypal",
            "address": "1 Main St",
            "phone": "555-0100",
        },
        headers=CUSTOMER_HEADERS,
    )
    assert response.status_code == 201
    return response.json()["order"]


@pytest.fixture
def api_payment(api_client, api_order):
    response = api_client.post(
        "/api/payments/process",
        json={"order_id": api_order["id"], "gateway": "paypal"},
        headers=CUSTOMER_HEADERS,
    )
    assert response.status_code == 201
    return response.json()["payment"]


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["database"] is True
        assert data["gateways"] == ["paypal", "stripe"]


class TestIdentity:
    def test_missing_user_is_forbidden(self, api_client):
        response = api_client.get("/api/orders/my")
        assert response.status_code == 403
        data = response.json()
        assert data["status"] == "error"
        assert data["error_type"] == "ForbiddenError"

    def test_unknown_role_is_forbidden(self, api_client):
        response = api_client.get(
            "/api/orders/my", headers={"X-User-Id": "1", "X-User-Role": "root"}
        )
        assert response.status_code == 403

    def test_non_numeric_user_id_is_forbidden(self, api_client):
        response = api_client.get(
            "/api/orders/my", headers={"X-User-Id": "abc", "X-User-Role": "customer"}
        )
        assert response.status_code == 403
        assert response.json()["error_type"] == "ForbiddenError"

    def test_customer_cannot_use_admin_routes(self, api_client):
        response = api_client.post(
            "/api/products",
            json={"name": "Widget", "price": "5.00"},
            headers=CUSTOMER_HEADERS,
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Require admin role"


class TestProducts:
    def test_create_and_get(self, api_client, api_product):
        assert api_product["price"] == "5.00"
        assert api_product["stock"] == 10

        response = api_client.get(f"/api/products/{api_product['id']}")
        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["product"]["name"] == "Widget"

    def test_get_missing(self, api_client):
        response = api_client.get("/api/products/999")
        assert response.status_code == 404
        data = response.json()
        assert data["status"] == "error"
        assert data["error_type"] == "ProductNotFoundError"

    def test_invalid_body_is_400(self, api_client):
        response = api_client.post(
            "/api/products", json={"name": "Widget", "price": "-1"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 400
        assert response.json()["status"] == "error"

    def test_update(self, api_client, api_product):
        response = api_client.put(
            f"/api/products/{api_product['id']}",
            json={"price": "6.50"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["product"]["price"] == "6.50"
        assert response.json()["product"]["name"] == "Widget"

    def test_update_null_active_is_400(self, api_client, api_product):
        url = f"/api/products/{api_product['id']}"

        response = api_client.put(url, json={"active": None}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["error_type"] == "ValidationError"

        product = api_client.get(url).json()["product"]
        assert product["active"] is True

    def test_delete_deactivates(self, api_client, api_product):
        response = api_client.delete(f"/api/products/{api_product['id']}", headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert response.json()["product"]["active"] is False

        public = api_client.get("/api/products").json()
        assert public["count"] == 0
        admin = api_client.get("/api/products/admin", headers=ADMIN_HEADERS).json()
        assert admin["count"] == 1

    def test_adjust_stock(self, api_client, api_product):
        url = f"/api/products/{api_product['id']}/stock"

        response = api_client.patch(url, json={"delta": -4}, headers=ADMIN_HEADERS)
        assert response.json()["product"]["stock"] == 6

        response = api_client.patch(url, json={"delta": -7}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["error_type"] == "InsufficientStockError"


class TestOrders:
    def test_create_order(self, api_client, api_product, api_order):
        assert api_order["customer_id"] == 42
        assert api_order["total"] == "15.00"
        assert api_order["fulfillment_status"] == "PENDING"
        assert api_order["payment_status"] == "PENDING"

        product = api_client.get(f"/api/products/{api_product['id']}").json()["product"]
        assert product["stock"] == 7

    def test_insufficient_stock(self, api_client, api_product):
        response = api_client.post(
            "/api/orders",
            json={
                "items": [{"product_id": api_product["id"], "quantity": 11}],
                "payment_method": "paypal",
                "address": "1 Main St",
                "phone": "555-0100",
            },
            headers=CUSTOMER_HEADERS,
        )
        assert response.status_code == 400
        assert "Insufficient stock" in response.json()["message"]

    def test_unsupported_payment_method(self, api_client, api_product):
        response = api_client.post(
            "/api/orders",
            json={
                "items": [{"product_id": api_product["id"], "quantity": 1}],
                "payment_method": "cash",
                "address": "1 Main St",
                "phone": "555-0100",
            },
            headers=CUSTOMER_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "UnsupportedGatewayError"

    def test_my_orders(self, api_client, api_order):
        mine = api_client.get("/api/orders/my", headers=CUSTOMER_HEADERS).json()
        theirs = api_client.get("/api/orders/my", headers=OTHER_CUSTOMER_HEADERS).json()

        assert [o["id"] for o in mine["orders"]] == [api_order["id"]]
        assert theirs["count"] == 0

    def test_list_all_requires_admin(self, api_client, api_order):
        assert api_client.get("/api/orders", headers=CUSTOMER_HEADERS).status_code == 403
        response = api_client.get("/api/orders", headers=ADMIN_HEADERS)
        assert response.json()["count"] == 1

    def test_get_order_owner_or_admin(self, api_client, api_order):
        url = f"/api/orders/{api_order['id']}"
        assert api_client.get(url, headers=CUSTOMER_HEADERS).status_code == 200
        assert api_client.get(url, headers=ADMIN_HEADERS).status_code == 200
        assert api_client.get(url, headers=OTHER_CUSTOMER_HEADERS).status_code == 403

    def test_update_status(self, api_client, api_order):
        url = f"/api/orders/{api_order['id']}/status"

        response = api_client.patch(url, json={"status": "SHIPPED"}, headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert response.json()["order"]["fulfillment_status"] == "SHIPPED"

        response = api_client.patch(url, json={"status": "PENDING"}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidTransitionError"

    def test_update_status_invalid_value(self, api_client, api_order):
        response = api_client.patch(
            f"/api/orders/{api_order['id']}/status",
            json={"status": "LOST"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidStatusError"

    def test_cancel_order(self, api_client, api_product, api_order):
        response = api_client.delete(f"/api/orders/{api_order['id']}", headers=CUSTOMER_HEADERS)
        assert response.status_code == 200
        assert response.json()["order"]["fulfillment_status"] == "CANCELLED"

        product = api_client.get(f"/api/products/{api_product['id']}").json()["product"]
        assert product["stock"] == 10

    def test_other_customer_cannot_cancel(self, api_client, api_order):
        response = api_client.delete(
            f"/api/orders/{api_order['id']}", headers=OTHER_CUSTOMER_HEADERS
        )
        assert response.status_code == 403


class TestPayments:
    def test_process(self, api_client, api_order, api_payment):
        assert api_payment["status"] == "COMPLETED"
        assert api_payment["amount"] == "15.00"
        assert api_payment["transaction_id"].startswith("PP-")

        order = api_client.get(f"/api/orders/{api_order['id']}", headers=CUSTOMER_HEADERS).json()
        assert order["order"]["payment_status"] == "COMPLETED"
        assert order["order"]["fulfillment_status"] == "PROCESSING"

    def test_pay_twice(self, api_client, api_order, api_payment):
        response = api_client.post(
            "/api/payments/process",
            json={"order_id": api_order["id"], "gateway": "stripe"},
            headers=CUSTOMER_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["error_type"] == "AlreadyPaidError"

        payments = api_client.get(
            f"/api/payments/order/{api_order['id']}", headers=CUSTOMER_HEADERS
        ).json()
        assert payments["count"] == 1

    def test_declined_is_402(self, api_client, api_order, declining_gateways, db):
        from shopflow.api import app, get_workflow
        from shopflow.settlement import SettlementWorkflow

        app.dependency_overrides[get_workflow] = lambda: SettlementWorkflow(db, declining_gateways)

        response = api_client.post(
            "/api/payments/process",
            json={"order_id": api_order["id"], "gateway": "paypal"},
            headers=CUSTOMER_HEADERS,
        )
        assert response.status_code == 402
        assert response.json()["error_type"] == "GatewayDeclinedError"

    def test_get_payment_and_status(self, api_client, api_payment):
        url = f"/api/payments/{api_payment['id']}"
        assert api_client.get(url, headers=CUSTOMER_HEADERS).status_code == 200
        assert api_client.get(url, headers=OTHER_CUSTOMER_HEADERS).status_code == 403

        response = api_client.get(f"{url}/status", headers=CUSTOMER_HEADERS)
        assert response.status_code == 200
        assert response.json()["transaction"]["status"] == "COMPLETED"

    def test_list_requires_admin(self, api_client, api_payment):
        assert api_client.get("/api/payments", headers=CUSTOMER_HEADERS).status_code == 403
        assert api_client.get("/api/payments", headers=ADMIN_HEADERS).json()["count"] == 1

    def test_cancel_payment(self, api_client, api_order, api_payment):
        response = api_client.delete(
            f"/api/payments/{api_payment['id']}", headers=CUSTOMER_HEADERS
        )
        assert response.status_code == 200
        data = response.json()
        assert data["payment"]["status"] == "CANCELLED"
        assert data["order"]["payment_status"] == "PENDING"

    def test_refund(self, api_client, api_payment):
        url = f"/api/payments/{api_payment['id']}/refund"

        assert api_client.post(url, headers=CUSTOMER_HEADERS).status_code == 403

        response = api_client.post(url, json={"amount": "20.00"}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["error_type"] == "RefundAmountError"

        response = api_client.post(url, json={"amount": "5.00"}, headers=ADMIN_HEADERS)
        assert response.status_code == 200
        data = response.json()
        assert data["payment"]["status"] == "REFUNDED"
        assert data["payment"]["refunded_amount"] == "5.00"
        assert data["refund"]["refund_id"].startswith("PPR-")
        assert data["order"]["payment_status"] == "REFUNDED"

    def test_full_refund_without_body(self, api_client, api_payment):
        response = api_client.post(
            f"/api/payments/{api_payment['id']}/refund", headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["payment"]["refunded_amount"] == "15.00"

    def test_refund_status(self, api_client, api_payment):
        url = f"/api/payments/{api_payment['id']}"

        response = api_client.get(f"{url}/refund-status", headers=CUSTOMER_HEADERS)
        assert response.status_code == 400

        refund = api_client.post(f"{url}/refund", headers=ADMIN_HEADERS).json()["refund"]

        response = api_client.get(f"{url}/refund-status", headers=CUSTOMER_HEADERS)
        assert response.status_code == 200
        assert response.json()["refund"]["refund_id"] == refund["refund_id"]
        assert response.json()["refund"]["status"] == "COMPLETED"
        other = api_client.get(f"{url}/refund-status", headers=OTHER_CUSTOMER_HEADERS)
        assert other.status_code == 403

    def test_unrecorded_refund_is_500(self, api_client, api_payment, workflow, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("notification store unavailable")

        monkeypatch.setattr(workflow.notifications, "payment_status", broken)

        response = api_client.post(
            f"/api/payments/{api_payment['id']}/refund", headers=ADMIN_HEADERS
        )
        assert response.status_code == 500
        assert response.json()["error_type"] == "PostRefundPersistenceError"
        assert "PPR-" in response.json()["message"]


class TestNotifications:
    def test_order_flow_creates_notifications(self, api_client, api_payment):
        response = api_client.get("/api/notifications/my", headers=CUSTOMER_HEADERS)
        data = response.json()
        assert data["count"] == 2
        assert {n["category"] for n in data["notifications"]} == {
            "order_status",
            "payment_status",
        }

    def test_promotion_and_mark_sent(self, api_client):
        response = api_client.post(
            "/api/notifications/send-promotion",
            json={"message": "Spring sale"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 201
        note = response.json()["notification"]
        assert note["customer_id"] is None
        assert note["sent"] is False

        # Broadcasts are visible to every customer
        assert api_client.get("/api/notifications/my", headers=CUSTOMER_HEADERS).json()["count"] == 1
        assert api_client.get(
            f"/api/notifications/{note['id']}", headers=OTHER_CUSTOMER_HEADERS
        ).status_code == 200

        response = api_client.patch(
            f"/api/notifications/{note['id']}/mark-sent", headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["notification"]["sent"] is True
        assert response.json()["notification"]["sent_at"] is not None

    def test_create_requires_admin(self, api_client):
        body = {"customer_id": 42, "message": "Hi", "category": "promotion"}
        assert api_client.post(
            "/api/notifications", json=body, headers=CUSTOMER_HEADERS
        ).status_code == 403
        response = api_client.post("/api/notifications", json=body, headers=ADMIN_HEADERS)
        assert response.status_code == 201
        note_id = response.json()["notification"]["id"]

        assert api_client.get(
            f"/api/notifications/{note_id}", headers=OTHER_CUSTOMER_HEADERS
        ).status_code == 403

    def test_create_invalid_category(self, api_client):
        response = api_client.post(
            "/api/notifications",
            json={"message": "Hi", "category": "newsletter"},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 400

    def test_send_order_status(self, api_client, api_order):
        response = api_client.post(
            "/api/notifications/send-order-status",
            json={"order_id": api_order["id"]},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 201
        note = response.json()["notification"]
        assert note["customer_id"] == 42
        assert "awaiting payment" in note["message"]

    def test_missing_notification(self, api_client):
        response = api_client.get("/api/notifications/999", headers=ADMIN_HEADERS)
        assert response.status_code == 404
