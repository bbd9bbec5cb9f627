# backend/tests/test_webhook_api.py

"""
HTTP surface tests (FastAPI TestClient, dependencies overridden with mocks).
TestClient is used without the context manager so startup index creation
never touches a real MongoDB.
"""

import copy
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import SERVER_KEY, webhook_payload
from database import get_db
from auth import get_current_user
from notification_service import NotificationService
from payment_reconciliation import PaymentReconciliationService, ReconciliationConflictError
from server import (
    app,
    get_midtrans_client,
    get_rajaongkir_client,
    get_reconciliation_service,
)


@pytest.fixture
def client(mock_db, customer, pending_order, semen_product):
    mock_db.orders.docs.append(copy.deepcopy(pending_order))
    mock_db.products.docs.append(copy.deepcopy(semen_product))
    mock_db.users.docs.append(copy.deepcopy(customer))
    mock_db.users.docs.append({"id": "admin-1", "role": "admin", "is_active": True})

    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_current_user] = lambda: customer
    app.dependency_overrides[get_midtrans_client] = lambda: None
    app.dependency_overrides[get_reconciliation_service] = lambda: PaymentReconciliationService(
        mock_db, SERVER_KEY, NotificationService(mock_db)
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def stored_order(mock_db, order_id="ORD-1"):
    return next(o for o in mock_db.orders.docs if o["order_id"] == order_id)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["ok"] is True


class TestWebhook:

    @pytest.mark.parametrize("path", ["/api/midtrans/webhook", "/api/midtrans-webhook"])
    def test_settlement_on_both_paths(self, client, mock_db, path):
        response = client.post(path, json=webhook_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert (body["payment_status"], body["order_status"]) == ("paid", "processing")
        assert stored_order(mock_db)["paid_at"] is not None
        # Background side effects ran after the response
        types = {n["user_id"]: n["type"] for n in mock_db.notifications.docs}
        assert types == {"user-1": "order_confirmed", "admin-1": "new_paid_order"}

    def test_replay_is_acknowledged_without_new_notifications(self, client, mock_db):
        client.post("/api/midtrans/webhook", json=webhook_payload())
        paid_at = stored_order(mock_db)["paid_at"]

        response = client.post("/api/midtrans-webhook", json=webhook_payload())

        assert response.status_code == 200
        assert response.json()["outcome"] == "UNCHANGED"
        assert stored_order(mock_db)["paid_at"] == paid_at
        assert len(mock_db.notifications.docs) == 2

    def test_invalid_signature(self, client, mock_db):
        response = client.post("/api/midtrans/webhook", json=webhook_payload(server_key="wrong"))

        assert response.status_code == 403
        assert stored_order(mock_db)["payment_status"] == "pending"

    def test_empty_body_is_rejected_by_signature(self, client):
        assert client.post("/api/midtrans/webhook", json={}).status_code == 403

    def test_unknown_order(self, client):
        response = client.post("/api/midtrans/webhook", json=webhook_payload(order_id="ORD-404"))

        assert response.status_code == 404

    def test_missing_server_key(self, client, mock_db):
        app.dependency_overrides[get_reconciliation_service] = lambda: PaymentReconciliationService(mock_db, "", None)

        response = client.post("/api/midtrans/webhook", json=webhook_payload())

        assert response.status_code == 500
        assert stored_order(mock_db)["payment_status"] == "pending"

    def test_conflict_asks_gateway_to_retry(self, client):
        service = MagicMock()
        service.reconcile = AsyncMock(side_effect=ReconciliationConflictError("busy"))
        app.dependency_overrides[get_reconciliation_service] = lambda: service

        assert client.post("/api/midtrans/webhook", json=webhook_payload()).status_code == 500

    def test_notification_failure_still_returns_200(self, client, mock_db):
        notifications = NotificationService(mock_db)
        notifications.notify_payment_confirmed = AsyncMock(side_effect=RuntimeError("insert failed"))
        app.dependency_overrides[get_reconciliation_service] = lambda: PaymentReconciliationService(
            mock_db, SERVER_KEY, notifications
        )

        response = client.post("/api/midtrans/webhook", json=webhook_payload())

        assert response.status_code == 200
        assert stored_order(mock_db)["payment_status"] == "paid"


class TestUnitsAndShipping:

    def test_convert(self, client):
        response = client.post("/api/units/convert", json={
            "category": "Semen", "quantity": 2, "from_unit": "sak", "to_unit": "kg"
        })

        assert response.status_code == 200
        assert response.json()["value"] == 100

    def test_convert_unsupported_unit(self, client):
        response = client.post("/api/units/convert", json={
            "category": "Semen", "quantity": 2, "from_unit": "karung", "to_unit": "kg"
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNSUPPORTED_UNIT"

    def test_convert_unsupported_category(self, client):
        response = client.post("/api/units/convert", json={
            "category": "Keramik", "quantity": 2, "from_unit": "dus", "to_unit": "pcs"
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNSUPPORTED_CATEGORY"

    def test_quote(self, client):
        response = client.post("/api/units/quote", json={
            "product_id": "prod-semen-gresik", "quantity": 25, "unit": "kg"
        })

        assert response.status_code == 200
        assert response.json()["total_price"] == 32500
        assert response.json()["can_purchase"] is True

    def test_quote_rejects_unit_disabled_for_product(self, client, mock_db):
        mock_db.products.docs[0]["available_units"] = ["sak", "kg"]

        response = client.post("/api/units/quote", json={
            "product_id": "prod-semen-gresik", "quantity": 1, "unit": "ton"
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "UNSUPPORTED_UNIT"

    def test_category_units_for_product(self, client):
        response = client.get("/api/categories/Semen/units", params={"product_id": "prod-semen-gresik"})

        assert response.status_code == 200
        assert response.json()["converter_available"] is True
        assert [u["unit"] for u in response.json()["conversions"]] == ["sak", "kg", "zak", "ton"]

    def test_shipping_weight(self, client):
        response = client.post("/api/shipping/weight", json={"items": [{
            "product_id": "p-besi", "name": "Besi 10mm", "category": "Besi",
            "unit": "batang", "price": 85000, "quantity": 3, "stock": 100
        }]})

        assert response.json() == {"total_weight_grams": 22200, "formatted": "22.20 kg"}

    def test_couriers(self, client):
        response = client.get("/api/shipping/couriers", params={"is_international": True})

        assert [c["code"] for c in response.json()["couriers"]] == ["jne", "tiki", "pos"]

    def test_shipping_cost_uses_cart_weight(self, client, mock_db):
        client.post("/api/cart/items", json={"product_id": "prod-semen-gresik", "quantity": 2, "unit": "sak"})
        rajaongkir = MagicMock()
        rajaongkir.calculate_multiple_couriers.return_value = [{"code": "jne", "cost": 24000}]
        app.dependency_overrides[get_rajaongkir_client] = lambda: rajaongkir

        response = client.post("/api/shipping/cost", json={"destination": "114", "courier": "jne", "origin": "501"})

        assert response.status_code == 200
        assert response.json()["weight_grams"] == 100000
        rajaongkir.calculate_multiple_couriers.assert_called_once_with("501", "114", 100000, ["jne"])


class TestCartAndOrders:

    def test_add_to_cart(self, client):
        response = client.post("/api/cart/items", json={
            "product_id": "prod-semen-gresik", "quantity": 25, "unit": "kg"
        })

        assert response.status_code == 200
        assert response.json()["items"][0]["price"] == 1300
        assert response.json()["total_price"] == 32500

    def test_add_over_stock(self, client):
        response = client.post("/api/cart/items", json={
            "product_id": "prod-semen-gresik", "quantity": 41, "unit": "sak"
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "INSUFFICIENT_STOCK"

    def test_add_unknown_product(self, client):
        response = client.post("/api/cart/items", json={"product_id": "missing", "quantity": 1, "unit": "sak"})

        assert response.status_code == 404

    def test_update_and_remove_line(self, client):
        client.post("/api/cart/items", json={"product_id": "prod-semen-gresik", "quantity": 1, "unit": "sak"})

        updated = client.put("/api/cart/items/prod-semen-gresik", params={"unit": "sak"}, json={"quantity": 4})
        assert updated.json()["total_items"] == 4

        removed = client.delete("/api/cart/items/prod-semen-gresik", params={"unit": "sak"})
        assert removed.json()["items"] == []

    def test_get_order(self, client):
        response = client.get("/api/orders/ORD-1")

        assert response.status_code == 200
        assert response.json()["order_id"] == "ORD-1"

    def test_missing_order(self, client):
        assert client.get("/api/orders/ORD-404").status_code == 404

    def test_cancel_order(self, client):
        response = client.post("/api/orders/ORD-1/cancel", json={"reason": "Salah pesan"})

        assert response.status_code == 200
        assert response.json()["order_status"] == "cancelled"

    def test_ship_requires_admin(self, client):
        response = client.post("/api/admin/orders/ORD-1/ship", json={"courier": "jne", "tracking_number": "X1"})

        assert response.status_code == 403

    def test_admin_ship_from_wrong_state(self, client):
        app.dependency_overrides[get_current_user] = lambda: {"id": "admin-1", "role": "admin"}

        response = client.post("/api/admin/orders/ORD-1/ship", json={"courier": "jne", "tracking_number": "X1"})

        assert response.status_code == 400

    def test_notifications(self, client, mock_db):
        client.post("/api/midtrans/webhook", json=webhook_payload())

        notes = client.get("/api/notifications").json()
        assert [n["type"] for n in notes] == ["order_confirmed"]

        assert client.put(f"/api/notifications/{notes[0]['id']}/read").json() == {"success": True}
        assert client.get("/api/notifications", params={"unread_only": True}).json() == []
        assert client.put("/api/notifications/unknown/read").status_code == 404

    def test_payment_config(self, client):
        response = client.get("/api/payments/config")

        assert response.status_code == 200
        assert set(response.json()) == {"client_key", "is_production"}

    def test_admin_sync_payment(self, client, mock_db):
        app.dependency_overrides[get_current_user] = lambda: {"id": "admin-1", "role": "admin"}
        midtrans = MagicMock()
        midtrans.get_transaction_status.return_value = webhook_payload(payment_type="bank_transfer")
        app.dependency_overrides[get_midtrans_client] = lambda: midtrans

        response = client.post("/api/admin/orders/ORD-1/sync-payment")

        assert response.status_code == 200
        assert response.json()["outcome"] == "APPLIED"
        assert stored_order(mock_db)["payment_status"] == "paid"
        midtrans.get_transaction_status.assert_called_once_with("ORD-1")

    def test_sync_payment_without_gateway(self, client):
        app.dependency_overrides[get_current_user] = lambda: {"id": "admin-1", "role": "admin"}

        assert client.post("/api/admin/orders/ORD-1/sync-payment").status_code == 400
