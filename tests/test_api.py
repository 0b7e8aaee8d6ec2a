import asyncio

import jwt
import pytest

from conftest import (
    ADMIN_ID,
    JWT_SECRET,
    OTHER_USER_ID,
    auth_header,
    intent_succeeded_event,
    make_token,
    sign_payload,
)

ORDER_BODY = {
    "shipping_info": {
        "address": "1 Main St",
        "city": "Springfield",
        "postal_code": "12345",
        "country": "US",
    },
    "order_items": [{"product_id": "widget", "quantity": 2}],
    "payment_method": "card",
    "items_price": 3000,
    "tax_price": 0,
    "shipping_price": 0,
    "total_price": 3000,
}

ADMIN = {"user_id": ADMIN_ID, "role": "admin"}


def create_order(client, method="card", headers=None):
    body = dict(ORDER_BODY, payment_method=method)
    response = client.post("/orders", json=body, headers=headers or auth_header())
    assert response.status_code == 201, response.text
    return response.json()["data"]


def stock(store, product_id="widget"):
    return asyncio.run(store.get_stock(product_id))


class TestEnvelope:
    def test_health(self, client):
        response = client.get("/health")
        body = response.json()

        assert response.status_code == 200
        assert body["success"] is True
        assert body["status_code"] == 200
        assert body["data"]["status"] == "healthy"
        assert "timestamp" in body
        assert "X-Request-ID" in response.headers

    def test_missing_token(self, client):
        response = client.post("/orders", json=ORDER_BODY)
        body = response.json()

        assert response.status_code == 401
        assert body["success"] is False
        assert body["message"] == "Authentication required"

    def test_invalid_token(self, client):
        headers = {"Authorization": f"Bearer {make_token(secret='another-secret-0123456789abcdef0123')}"}
        response = client.get("/orders", headers=headers)
        assert response.status_code == 401

    def test_cookie_token(self, client):
        response = client.get("/orders", headers={"Cookie": f"accessToken={make_token()}"})
        assert response.status_code == 200

    def test_body_validation_is_400(self, client):
        body = dict(ORDER_BODY, order_items=[])
        response = client.post("/orders", json=body, headers=auth_header())

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["message"] == "Validation failed"

    def test_unknown_route(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["success"] is False


class TestOrders:
    def test_create_card_order(self, client, store):
        data = create_order(client)

        assert data["client_secret"] == "pi_test_1_secret"
        assert data["order"]["status"] == "created"
        assert data["order"]["is_paid"] is False
        assert data["order"]["order_items"][0]["line_total"] == 3000
        assert stock(store) == 5

    def test_create_with_insufficient_stock(self, client):
        body = dict(ORDER_BODY, order_items=[{"product_id": "gadget", "quantity": 2}],
                    items_price=5000, total_price=5000)
        response = client.post("/orders", json=body, headers=auth_header())

        assert response.status_code == 409
        assert response.json()["data"]["product_id"] == "gadget"

    def test_create_cash_order(self, client, store):
        data = create_order(client, method="cash_on_delivery")

        assert data["order"]["status"] == "processing"
        assert data["client_secret"] is None
        assert stock(store) == 3

    def test_list_my_orders(self, client):
        create_order(client)
        create_order(client, headers=auth_header(OTHER_USER_ID))

        response = client.get("/orders", headers=auth_header())
        orders = response.json()["data"]

        assert len(orders) == 1
        assert orders[0]["user_id"] == "user_1"

    def test_get_order_owner_admin_other(self, client):
        order_id = create_order(client)["order"]["order_id"]

        assert client.get(f"/orders/{order_id}", headers=auth_header()).status_code == 200
        assert client.get(f"/orders/{order_id}", headers=auth_header(**ADMIN)).status_code == 200
        assert client.get(f"/orders/{order_id}", headers=auth_header(OTHER_USER_ID)).status_code == 403
        assert client.get("/orders/missing", headers=auth_header()).status_code == 404


class TestConfirmPayment:
    def test_confirm_then_download_receipt(self, client, gateway, store):
        data = create_order(client)
        order_id = data["order"]["order_id"]
        intent_id = data["order"]["payment_info"]["id"]
        gateway.mark_succeeded(intent_id)

        response = client.post(
            "/orders/confirm-payment",
            json={"payment_intent_id": intent_id, "order_id": order_id},
            headers=auth_header(),
        )
        body = response.json()

        assert response.status_code == 200
        assert body["message"] == "Payment confirmed and order updated"
        assert body["data"]["order"]["status"] == "processing"
        assert body["data"]["receipt_download_link"] == f"/orders/receipt/{order_id}"
        assert stock(store) == 3

        receipt = client.get(f"/orders/receipt/{order_id}", headers=auth_header())
        assert receipt.status_code == 200
        assert "ORDER RECEIPT" in receipt.text

    def test_confirm_twice(self, client, gateway, store):
        data = create_order(client)
        order_id = data["order"]["order_id"]
        intent_id = data["order"]["payment_info"]["id"]
        gateway.mark_succeeded(intent_id)
        body = {"payment_intent_id": intent_id, "order_id": order_id}

        client.post("/orders/confirm-payment", json=body, headers=auth_header())
        response = client.post("/orders/confirm-payment", json=body, headers=auth_header())

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "already_settled"
        assert stock(store) == 3

    def test_confirm_unpaid_intent(self, client):
        data = create_order(client)
        response = client.post(
            "/orders/confirm-payment",
            json={"payment_intent_id": data["order"]["payment_info"]["id"], "order_id": data["order"]["order_id"]},
            headers=auth_header(),
        )
        assert response.status_code == 409
        assert response.json()["message"] == "Payment not succeeded"

    def test_confirm_missing_fields(self, client):
        response = client.post("/orders/confirm-payment", json={"order_id": "x"}, headers=auth_header())
        assert response.status_code == 400

    def test_receipt_missing(self, client):
        order_id = create_order(client)["order"]["order_id"]
        response = client.get(f"/orders/receipt/{order_id}", headers=auth_header())
        assert response.status_code == 404


class TestWebhookEndpoint:
    def test_bad_signature(self, client):
        response = client.post(
            "/payments/webhook",
            content=b'{"type": "payment_intent.succeeded"}',
            headers={"stripe-signature": "t=1,v1=deadbeef"},
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_settles_order(self, client, engine, store):
        order_id = create_order(client)["order"]["order_id"]
        order = asyncio.run(engine.orders.get(order_id))
        payload = intent_succeeded_event(order)

        response = client.post(
            "/payments/webhook",
            content=payload.encode(),
            headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["received"] is True
        assert response.json()["data"]["status"] == "settled"
        assert stock(store) == 3


class TestAdmin:
    def test_requires_admin(self, client):
        assert client.get("/admin/orders", headers=auth_header()).status_code == 403
        assert client.get("/admin/orders").status_code == 401

    def test_paginated_list(self, client):
        for _ in range(3):
            create_order(client)

        response = client.get("/admin/orders?page=2&limit=2", headers=auth_header(**ADMIN))
        data = response.json()["data"]

        assert response.status_code == 200
        assert data["page"] == 2
        assert data["total_pages"] == 2
        assert data["total_orders"] == 3
        assert len(data["orders"]) == 1

    def test_filter_by_status(self, client):
        create_order(client)
        create_order(client, method="cash_on_delivery")

        response = client.get("/admin/orders?status=processing", headers=auth_header(**ADMIN))
        data = response.json()["data"]

        assert [o["payment_info"]["method"] for o in data["orders"]] == ["cash_on_delivery"]
        assert data["total_orders"] == 1

    def test_filter_by_status_is_paginated(self, client):
        for _ in range(3):
            create_order(client, method="cash_on_delivery")
        create_order(client)

        response = client.get("/admin/orders?status=processing&page=2&limit=2", headers=auth_header(**ADMIN))
        data = response.json()["data"]

        assert data["page"] == 2
        assert data["total_pages"] == 2
        assert data["total_orders"] == 3
        assert len(data["orders"]) == 1

    def test_status_update_flow(self, client, store):
        order_id = create_order(client, method="cash_on_delivery")["order"]["order_id"]
        admin = auth_header(**ADMIN)

        shipped = client.put(f"/admin/orders/{order_id}", json={"status": "shipped"}, headers=admin)
        delivered = client.put(f"/admin/orders/{order_id}", json={"status": "Delivered "}, headers=admin)
        cancelled = client.put(f"/admin/orders/{order_id}", json={"status": "cancelled"}, headers=admin)

        assert shipped.status_code == 200
        assert delivered.json()["data"]["delivered_at"] is not None
        assert cancelled.status_code == 409
        assert stock(store) == 3

    def test_invalid_status(self, client):
        order_id = create_order(client)["order"]["order_id"]
        response = client.put(f"/admin/orders/{order_id}", json={"status": "paid"}, headers=auth_header(**ADMIN))

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid order status"

    def test_cancel_restocks(self, client, store):
        order_id = create_order(client, method="cash_on_delivery")["order"]["order_id"]

        response = client.put(f"/admin/orders/{order_id}", json={"status": "cancelled"}, headers=auth_header(**ADMIN))

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"
        assert stock(store) == 5

    def test_delete(self, client, store):
        order_id = create_order(client, method="cash_on_delivery")["order"]["order_id"]
        admin = auth_header(**ADMIN)

        response = client.delete(f"/admin/orders/{order_id}", headers=admin)

        assert response.status_code == 200
        assert stock(store) == 5
        assert client.get(f"/orders/{order_id}", headers=admin).status_code == 404
        assert client.delete(f"/admin/orders/{order_id}", headers=admin).status_code == 404


@pytest.mark.parametrize("claims", [{"sub": "user_1"}, {"_id": "user_1", "role": "superuser"}])
def test_claim_variants_resolve_to_user(client, claims):
    token = jwt.encode(claims, JWT_SECRET, algorithm="HS256")
    response = client.get("/admin/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403
