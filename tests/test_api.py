"""Tests for the FastAPI API."""

import asyncio
import hashlib
import hmac
import json

from medorders.models import Role, User
from medorders.payments import PaymentService


def _sign(secret, message):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _checkout(client, auth, seeded, **extra):
    body = {
        "products": [
            {"product": seeded.p1.id, "quantity": 2},
            {"product": seeded.p2.id, "quantity": 1},
        ],
        "delivery_address": {"address": "12 MG Road", "pin_code": "411001"},
        **extra,
    }
    response = client.post("/api/orders", json=body, headers=auth(seeded.patient))
    assert response.status_code == 201
    return response.json()["data"]["orders"]


def _lab_a_order_id(orders, seeded):
    return next(o["id"] for o in orders if o["laboratory_user"]["id"] == seeded.lab_a.id)


class TestHealthCheck:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["order_count"] == 0


class TestAuthentication:
    def test_missing_token(self, client, seeded):
        response = client.get("/api/orders/mine")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error_type"] == "AuthenticationError"

    def test_forged_token(self, client, seeded):
        headers = {"Authorization": f"Bearer {seeded.patient.id}.deadbeef"}

        assert client.get("/api/orders/mine", headers=headers).status_code == 401

    def test_unknown_user(self, client, auth, seeded):
        ghost = User(id="ghost", name="Ghost", role=Role.USER)

        assert client.get("/api/orders/mine", headers=auth(ghost)).status_code == 401

    def test_wrong_role(self, client, auth, seeded):
        response = client.get("/api/admin/orders", headers=auth(seeded.patient))

        assert response.status_code == 403
        assert response.json()["error_type"] == "PermissionDeniedError"


class TestProducts:
    def test_list_is_public(self, client, seeded):
        response = client.get("/api/products", params={"search": "glucose"})

        assert response.status_code == 200
        body = response.json()
        assert [p["id"] for p in body["data"]] == [seeded.p2.id]
        assert body["pagination"]["total"] == 1

    def test_lab_creates_product(self, client, auth, seeded):
        response = client.post(
            "/api/products",
            json={"name": "Lipid panel", "price": 250, "available_quantity": 3},
            headers=auth(seeded.lab_b),
        )

        assert response.status_code == 201
        assert response.json()["data"]["owner_id"] == seeded.lab_b.id

    def test_patient_cannot_create_product(self, client, auth, seeded):
        response = client.post(
            "/api/products", json={"name": "x", "price": 1}, headers=auth(seeded.patient)
        )
        assert response.status_code == 403

    def test_other_lab_cannot_update(self, client, auth, seeded):
        response = client.patch(
            f"/api/products/{seeded.p1.id}", json={"price": 1}, headers=auth(seeded.lab_b)
        )
        assert response.status_code == 403

    def test_missing_product(self, client):
        response = client.get("/api/products/missing")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "Product not found: missing",
            "error_type": "ProductNotFoundError",
        }

    def test_limit_out_of_range(self, client):
        response = client.get("/api/products", params={"limit": 101})

        assert response.status_code == 400
        assert response.json()["error_type"] == "ValidationError"


class TestCheckout:
    def test_fan_out(self, client, auth, seeded):
        orders = _checkout(client, auth, seeded)

        totals = {o["laboratory_user"]["id"]: o["total_price"] for o in orders}
        assert totals == {seeded.lab_a.id: 200, seeded.lab_b.id: 50}
        assert all(o["customer_address"] == "12 MG Road" for o in orders)
        assert all(o["customer_pin_code"] == "411001" for o in orders)

    def test_empty_cart_rejected(self, client, auth, seeded):
        response = client.post("/api/orders", json={}, headers=auth(seeded.patient))

        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidOrderError"

    def test_dropped_lines_reported_as_warnings(self, client, auth, seeded):
        body = {
            "products": [
                {"product": seeded.p1.id, "quantity": 1},
                {"product": "gone", "quantity": 1},
            ]
        }
        response = client.post("/api/orders", json=body, headers=auth(seeded.patient))

        assert response.status_code == 201
        payload = response.json()
        assert len(payload["data"]["orders"]) == 1
        assert payload["warnings"][0]["step"] == "resolve_owner"

    def test_cod_checkout(self, client, auth, seeded):
        body = {
            "products": [{"product": seeded.p2.id, "quantity": 1}],
            "total_price": 50,
        }
        response = client.post("/api/orders/cod", json=body, headers=auth(seeded.patient))

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["order_status"] == "confirmed"
        assert data["orders"][0]["cod"] is True
        assert data["orders"][0]["is_paid"] is False

    def test_cod_without_total(self, client, auth, seeded):
        body = {"products": [{"product": seeded.p2.id, "quantity": 1}]}
        response = client.post("/api/orders/cod", json=body, headers=auth(seeded.patient))

        assert response.status_code == 400

    def test_my_orders(self, client, auth, seeded):
        _checkout(client, auth, seeded)

        response = client.get("/api/orders/mine", params={"limit": 1}, headers=auth(seeded.patient))

        body = response.json()
        assert len(body["data"]) == 1
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}

        other = client.get("/api/orders/mine", headers=auth(seeded.other_patient)).json()
        assert other["data"] == []

    def test_order_detail_visibility(self, client, auth, seeded):
        order_id = _lab_a_order_id(_checkout(client, auth, seeded), seeded)

        assert client.get(f"/api/orders/{order_id}", headers=auth(seeded.patient)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=auth(seeded.lab_a)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=auth(seeded.admin)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=auth(seeded.lab_b)).status_code == 403
        assert client.get("/api/orders/nope", headers=auth(seeded.admin)).status_code == 404


class TestLabAssignment:
    def test_claim_then_second_claim(self, client, auth, seeded):
        response = client.post(
            "/api/orders",
            json={"prescription": "Thyroid profile", "need_assignment": True},
            headers=auth(seeded.patient),
        )
        order_id = response.json()["data"]["orders"][0]["id"]

        lab_view = client.get(
            "/api/orders/lab", params={"unassigned_only": True}, headers=auth(seeded.lab_b)
        )
        assert [o["id"] for o in lab_view.json()["data"]] == [order_id]

        first = client.post(f"/api/orders/{order_id}/claim", headers=auth(seeded.lab_a))
        assert first.status_code == 200
        assert first.json()["data"]["status"] == "confirmed"

        second = client.post(f"/api/orders/{order_id}/claim", headers=auth(seeded.lab_b))
        assert second.status_code == 400
        assert second.json()["error_type"] == "OrderAlreadyAssignedError"

    def test_admin_assigns_by_profile(self, client, auth, seeded):
        response = client.post(
            "/api/orders",
            json={"prescription": "CBC", "need_assignment": True},
            headers=auth(seeded.patient),
        )
        order_id = response.json()["data"]["orders"][0]["id"]

        queue = client.get("/api/admin/orders/needing-assignment", headers=auth(seeded.admin))
        assert queue.json()["pagination"]["total"] == 1

        assigned = client.post(
            f"/api/admin/orders/{order_id}/assign-lab",
            json={"laboratory_id": seeded.lab_a_profile.id},
            headers=auth(seeded.admin),
        )
        assert assigned.status_code == 200
        assert assigned.json()["data"]["laboratory_user"]["id"] == seeded.lab_a.id


class TestDeliveryFlow:
    def _assign(self, client, auth, seeded):
        order_id = _lab_a_order_id(_checkout(client, auth, seeded), seeded)
        response = client.post(
            f"/api/orders/{order_id}/assign-delivery",
            json={"delivery_partner_id": seeded.partner.id},
            headers=auth(seeded.lab_a),
        )
        assert response.status_code == 200
        return order_id, response.json()

    def test_assignment_returns_partner_address(self, client, auth, seeded):
        _, body = self._assign(client, auth, seeded)

        assert body["data"]["order"]["status"] == "assigned_to_delivery"
        assert body["data"]["delivery_partner_address"] == {
            "address": None,
            "pin_code": None,
            "city": None,
        }
        assert body["warnings"][0]["step"] == "partner_address"

    def test_accept_and_other_partner_forbidden(self, client, auth, seeded):
        order_id, _ = self._assign(client, auth, seeded)

        accepted = client.post(f"/api/delivery/orders/{order_id}/accept", headers=auth(seeded.partner))
        assert accepted.status_code == 200
        assert accepted.json()["data"]["status"] == "delivery_accepted"

        other = client.post(f"/api/delivery/orders/{order_id}/accept", headers=auth(seeded.partner2))
        assert other.status_code == 403
        detail = client.get(f"/api/orders/{order_id}", headers=auth(seeded.admin)).json()
        assert detail["data"]["status"] == "delivery_accepted"

    def test_reject_with_reason(self, client, auth, seeded):
        order_id, _ = self._assign(client, auth, seeded)

        missing = client.post(
            f"/api/delivery/orders/{order_id}/reject", json={}, headers=auth(seeded.partner)
        )
        assert missing.status_code == 400

        response = client.post(
            f"/api/delivery/orders/{order_id}/reject",
            json={"reason": "no rider available"},
            headers=auth(seeded.partner),
        )
        data = response.json()["data"]
        assert data["status"] == "delivery_rejected"
        assert data["rejection_reason"] == "no rider available"
        assert data["assigned_at"] is None

    def test_progress_to_delivered(self, client, auth, seeded):
        order_id, _ = self._assign(client, auth, seeded)
        headers = auth(seeded.partner)

        skipped = client.patch(
            f"/api/delivery/orders/{order_id}/status", json={"status": "delivered"}, headers=headers
        )
        assert skipped.status_code == 400
        assert skipped.json()["error_type"] == "InvalidTransitionError"

        client.post(f"/api/delivery/orders/{order_id}/accept", headers=headers)
        for status in ("out_for_delivery", "delivered"):
            response = client.patch(
                f"/api/delivery/orders/{order_id}/status", json={"status": status}, headers=headers
            )
            assert response.status_code == 200
            assert response.json()["data"]["status"] == status

        listing = client.get(
            "/api/delivery/orders", params={"status": "delivered"}, headers=headers
        ).json()
        assert [o["id"] for o in listing["data"]] == [order_id]

        stats = client.get("/api/delivery/stats", headers=headers).json()["data"]
        assert stats["delivered_today"] == 1

    def test_invalid_status_value(self, client, auth, seeded):
        order_id, _ = self._assign(client, auth, seeded)

        response = client.patch(
            f"/api/delivery/orders/{order_id}/status",
            json={"status": "teleported"},
            headers=auth(seeded.partner),
        )
        assert response.status_code == 400

    def test_delivery_profile_auto_created(self, client, auth, seeded):
        response = client.get("/api/delivery/profile", headers=auth(seeded.partner2))

        assert response.status_code == 200
        assert response.json()["data"]["profile"]["user_id"] == seeded.partner2.id

    def test_partner_saves_address_used_on_assignment(self, client, auth, seeded):
        saved = client.post(
            "/api/delivery/profile",
            json={"address": "5 Hill Rd", "pin_code": "411002", "city": "Pune"},
            headers=auth(seeded.partner),
        )
        assert saved.status_code == 200
        assert saved.json()["data"]["profile"]["city"] == "Pune"

        partial = client.post(
            "/api/delivery/profile", json={"city": "Mumbai"}, headers=auth(seeded.partner)
        )
        profile = partial.json()["data"]["profile"]
        assert profile["address"] == "5 Hill Rd"
        assert profile["city"] == "Mumbai"
        assert profile["is_verified"] is False

        _, body = self._assign(client, auth, seeded)
        assert body["data"]["delivery_partner_address"]["address"] == "5 Hill Rd"
        assert "warnings" not in body

    def test_only_partners_edit_delivery_profile(self, client, auth, seeded):
        response = client.post(
            "/api/delivery/profile", json={"city": "Pune"}, headers=auth(seeded.patient)
        )

        assert response.status_code == 403


class TestStatusAndPayments:
    def test_generic_status_update(self, client, auth, seeded):
        order_id = _lab_a_order_id(_checkout(client, auth, seeded), seeded)

        response = client.patch(
            f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=auth(seeded.lab_a)
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

        again = client.patch(
            f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(seeded.lab_a)
        )
        assert again.status_code == 400

    def test_cancel_unpaid(self, client, auth, seeded):
        order_id = _lab_a_order_id(_checkout(client, auth, seeded), seeded)

        forbidden = client.delete(
            f"/api/orders/{order_id}/cancel-unpaid", headers=auth(seeded.other_patient)
        )
        assert forbidden.status_code == 403

        response = client.delete(f"/api/orders/{order_id}/cancel-unpaid", headers=auth(seeded.patient))
        assert response.json()["data"]["status"] == "cancelled"

    def test_admin_payment_override_and_stats(self, client, auth, seeded):
        order_id = _lab_a_order_id(_checkout(client, auth, seeded), seeded)

        response = client.patch(
            f"/api/orders/{order_id}/payment-status", json={"is_paid": True}, headers=auth(seeded.admin)
        )
        assert response.json()["data"]["is_paid"] is True

        stats = client.get("/api/admin/orders/stats", headers=auth(seeded.admin)).json()["data"]
        assert stats["total_orders"] == 2

    def test_admin_list_filters(self, client, auth, seeded):
        _checkout(client, auth, seeded)

        response = client.get(
            "/api/admin/orders",
            params={"laboratory_user": seeded.lab_b.id, "status": "confirmed"},
            headers=auth(seeded.admin),
        )
        data = response.json()["data"]
        assert len(data) == 1
        assert data[0]["total_price"] == 50


class TestPaymentEndpoints:
    def test_product_order_and_verify(self, client, auth, seeded, settings, gateway_backend):
        order_data = {"products": [{"product": seeded.p1.id, "quantity": 1}]}

        created = client.post(
            "/api/payments/product-order",
            json={"amount": 10000, "order_data": order_data},
            headers=auth(seeded.patient),
        )
        assert created.status_code == 201
        gateway_order_id = created.json()["data"]["order_id"]

        gateway_backend.add_payment("pay_1", gateway_order_id)
        verify_body = {
            "razorpay_order_id": gateway_order_id,
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": _sign(settings.razorpay_key_secret, f"{gateway_order_id}|pay_1"),
            "order_data": order_data,
        }
        first = client.post("/api/payments/verify", json=verify_body, headers=auth(seeded.patient))
        assert first.status_code == 201
        assert first.json()["data"]["orders"][0]["is_paid"] is True

        second = client.post("/api/payments/verify", json=verify_body, headers=auth(seeded.patient))
        assert second.status_code == 200
        assert second.json()["message"] == "Payment already processed"

    def test_verify_bad_signature(self, client, auth, seeded):
        body = {
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "bad",
            "order_data": {"prescription": "CBC"},
        }
        response = client.post("/api/payments/verify", json=body, headers=auth(seeded.patient))

        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidSignatureError"

    def test_gateway_failure_is_bad_gateway(self, client, auth, seeded, settings):
        body = {
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_unknown",
            "razorpay_signature": _sign(settings.razorpay_key_secret, "order_1|pay_unknown"),
            "order_data": {"prescription": "CBC"},
        }
        response = client.post("/api/payments/verify", json=body, headers=auth(seeded.patient))

        assert response.status_code == 502

    def test_webhook(self, client, seeded, settings):
        payment = {
            "id": "pay_w",
            "order_id": "order_w",
            "status": "captured",
            "notes": {
                "userId": seeded.patient.id,
                "paymentType": "product",
                "orderData": json.dumps({"products": [{"product": seeded.p2.id, "quantity": 1}]}),
            },
        }
        raw = json.dumps(
            {"event": "payment.captured", "created_at": 1700000000, "payload": {"payment": {"entity": payment}}}
        ).encode()
        headers = {
            "X-Razorpay-Signature": _sign(settings.razorpay_webhook_secret, raw),
            "X-Razorpay-Event-Id": "evt_api",
            "Content-Type": "application/json",
        }

        first = client.post("/api/payments/webhook", content=raw, headers=headers)
        assert first.status_code == 200
        assert len(first.json()["data"]["orders"]) == 1

        second = client.post("/api/payments/webhook", content=raw, headers=headers)
        assert second.json()["data"]["duplicate"] is True

    def test_webhook_without_signature(self, client):
        response = client.post("/api/payments/webhook", content=b"{}")

        assert response.status_code == 400
        assert response.json()["error_type"] == "WebhookRejectedError"

    def test_webhook_handled_off_the_event_loop(self, client, monkeypatch):
        seen = {}
        handle_webhook = PaymentService.handle_webhook

        def recording(self, *args):
            try:
                asyncio.get_running_loop()
                seen["on_loop"] = True
            except RuntimeError:
                seen["on_loop"] = False
            return handle_webhook(self, *args)

        monkeypatch.setattr(PaymentService, "handle_webhook", recording)

        response = client.post("/api/payments/webhook", content=b"{}")

        assert response.status_code == 400
        assert seen == {"on_loop": False}
