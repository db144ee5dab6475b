"""HTTP tests for the enrollment, order and discount endpoints."""

import pytest
from httpx import AsyncClient

from app.services.stripe_service import StripeGateway
from core.exceptions.base import PaymentProcessingException


class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthentication:
    """Tests for bearer token handling."""

    async def test_missing_token(self, client: AsyncClient):
        response = await client.get("/api/v1/enrollments/my")
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/enrollments/my", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    async def test_admin_endpoint_rejects_parent(
        self, client: AsyncClient, auth_headers: dict, create_class
    ):
        class_ = await create_class()
        response = await client.get(
            f"/api/v1/enrollments/waitlist/{class_.id}", headers=auth_headers
        )
        assert response.status_code == 403


class TestEnrollmentFlow:
    """Tests for enrolling, paying and cancelling over HTTP."""

    async def test_enroll_checkout_confirm(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child, gateway
    ):
        class_ = await create_class(price=15000)
        child = await create_child()

        response = await client.post(
            "/api/v1/enrollments/",
            json={"child_id": child.id, "class_id": class_.id},
            headers=auth_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["enrollment"]["status"] == "pending"
        assert data["order"]["status"] == "draft"
        assert data["order"]["total"] == 15000
        enrollment_id = data["enrollment"]["id"]
        order_id = data["order"]["id"]

        response = await client.post(
            f"/api/v1/orders/{order_id}/checkout",
            json={"payment_method_id": "pm_card_visa"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        token = response.json()["authorization_token"]
        assert response.json()["status"] == "pending_payment"

        for _ in range(2):
            response = await client.post(
                f"/api/v1/orders/{order_id}/confirm",
                json={"authorization_token": token},
                headers=auth_headers,
            )
            assert response.status_code == 200
            assert response.json()["status"] == "paid"
        assert gateway.confirmed == [token]

        response = await client.get(f"/api/v1/enrollments/{enrollment_id}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "active"

        response = await client.get(
            f"/api/v1/enrollments/{enrollment_id}/cancellation-preview", headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["net_refund"] == 15000

        response = await client.post(
            f"/api/v1/enrollments/{enrollment_id}/cancel",
            json={"reason": "Moving away"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["enrollment"]["status"] == "cancelled"
        assert data["refunded"] == 15000
        assert data["refund_pending"] is False

    async def test_full_class_returns_waitlist_position(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child
    ):
        class_ = await create_class(capacity=0)
        child = await create_child()

        response = await client.post(
            "/api/v1/enrollments/",
            json={"child_id": child.id, "class_id": class_.id},
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["enrollment"]["status"] == "waitlist"
        assert data["waitlist_position"] == 1
        assert data["order"] is None

    async def test_duplicate_enrollment_conflicts(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child
    ):
        class_ = await create_class()
        child = await create_child()
        payload = {"child_id": child.id, "class_id": class_.id}

        await client.post("/api/v1/enrollments/", json=payload, headers=auth_headers)
        response = await client.post("/api/v1/enrollments/", json=payload, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT"

    async def test_ineligible_code_returns_reason(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child,
        create_discount_code,
    ):
        class_ = await create_class(price=50)
        child = await create_child()
        await create_discount_code(min_order_amount=100)

        response = await client.post(
            "/api/v1/enrollments/",
            json={"child_id": child.id, "class_id": class_.id, "discount_code": "SAVE20"},
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["data"]["reason"] == "below minimum order amount"

    async def test_unknown_enrollment(self, client: AsyncClient, auth_headers: dict):
        response = await client.get("/api/v1/enrollments/missing", headers=auth_headers)
        assert response.status_code == 404

    async def test_pending_refunds_listed_for_admin(
        self, client: AsyncClient, auth_headers: dict, admin_headers: dict, manager,
        parent_ctx, create_class, create_child, enroll_and_pay, gateway,
    ):
        class_ = await create_class()
        enrollment, _ = await enroll_and_pay(parent_ctx, await create_child(), class_)
        gateway.refund_error = PaymentProcessingException("Gateway timeout", retryable=True)
        await manager.cancel(parent_ctx, enrollment.id)

        response = await client.get("/api/v1/enrollments/refunds/pending", headers=auth_headers)
        assert response.status_code == 403

        response = await client.get("/api/v1/enrollments/refunds/pending", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == enrollment.id
        assert data["items"][0]["refund_status"] == "refund_pending"
        assert data["items"][0]["refund_amount_due"] == 10000


class TestOrderEndpoints:
    async def test_calculate(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child,
        create_discount_code,
    ):
        class_ = await create_class(price=10000)
        child = await create_child()
        await create_discount_code()

        response = await client.post(
            "/api/v1/orders/calculate",
            json={
                "items": [{"child_id": child.id, "class_id": class_.id}],
                "discount_code": "SAVE20",
            },
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["subtotal"] == 10000
        assert data["code_discount"] == 2000
        assert data["total"] == 8000
        assert data["discount_eligible"] is True

    async def test_parent_cannot_refund(
        self, client: AsyncClient, auth_headers: dict
    ):
        response = await client.post(
            "/api/v1/orders/some-order/refund", json={"amount": 100}, headers=auth_headers
        )
        assert response.status_code == 403

    async def test_installment_checkout(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child, gateway
    ):
        class_ = await create_class(price=1000)
        child = await create_child()
        response = await client.post(
            "/api/v1/enrollments/",
            json={"child_id": child.id, "class_id": class_.id},
            headers=auth_headers,
        )
        order_id = response.json()["order"]["id"]

        response = await client.post(
            f"/api/v1/orders/{order_id}/checkout",
            json={
                "payment_method_id": "pm_card_visa",
                "plan": {"type": "installments", "count": 3, "frequency": "monthly"},
            },
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["plan_type"] == "installments"
        token = response.json()["authorization_token"]
        assert gateway.authorizations[token] == 334

        response = await client.post(
            f"/api/v1/orders/{order_id}/confirm",
            json={"authorization_token": token},
            headers=auth_headers,
        )
        assert response.json()["status"] == "partially_paid"

        response = await client.get(
            f"/api/v1/installments/order/{order_id}", headers=auth_headers
        )
        assert response.status_code == 200
        assert [p["status"] for p in response.json()["installment_payments"]] == [
            "succeeded",
            "pending",
            "pending",
        ]


class TestDiscountEndpoints:
    async def test_admin_creates_code_and_parent_validates(
        self, client: AsyncClient, auth_headers: dict, admin_headers: dict
    ):
        response = await client.post(
            "/api/v1/discounts/codes",
            json={
                "code": "save20",
                "discount_type": "percentage",
                "discount_value": "20",
                "min_order_amount": 100,
            },
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["code"] == "SAVE20"

        response = await client.post(
            "/api/v1/discounts/validate",
            json={"code": "SAVE20", "cart_total": 50},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json() == {
            "eligible": False,
            "reason": "below minimum order amount",
            "discount_amount": 0,
        }

        response = await client.post(
            "/api/v1/discounts/validate",
            json={"code": "SAVE20", "cart_total": 10000},
            headers=auth_headers,
        )
        assert response.json()["eligible"] is True
        assert response.json()["discount_amount"] == 2000

    async def test_parent_cannot_create_code(self, client: AsyncClient, auth_headers: dict):
        response = await client.post(
            "/api/v1/discounts/codes",
            json={"code": "FREEBIE", "discount_type": "percentage", "discount_value": "100"},
            headers=auth_headers,
        )
        assert response.status_code == 403

    async def test_duplicate_code(self, client: AsyncClient, admin_headers: dict):
        payload = {"code": "SPRING", "discount_type": "fixed_amount", "discount_value": "500"}
        await client.post("/api/v1/discounts/codes", json=payload, headers=admin_headers)
        response = await client.post("/api/v1/discounts/codes", json=payload, headers=admin_headers)
        assert response.status_code == 409


class TestStripeWebhook:
    """Tests for gateway callbacks."""

    async def test_succeeded_intent_confirms_order(
        self, client: AsyncClient, auth_headers: dict, create_class, create_child,
        monkeypatch: pytest.MonkeyPatch,
    ):
        class_ = await create_class()
        child = await create_child()
        response = await client.post(
            "/api/v1/enrollments/",
            json={"child_id": child.id, "class_id": class_.id},
            headers=auth_headers,
        )
        order_id = response.json()["order"]["id"]
        response = await client.post(
            f"/api/v1/orders/{order_id}/checkout",
            json={"payment_method_id": "pm_card_visa"},
            headers=auth_headers,
        )
        token = response.json()["authorization_token"]

        event = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": token, "metadata": {"order_id": order_id}}},
        }
        monkeypatch.setattr(
            StripeGateway, "construct_event", staticmethod(lambda payload, signature: event)
        )

        for _ in range(2):
            response = await client.post(
                "/api/v1/webhooks/stripe",
                content=b"{}",
                headers={"Stripe-Signature": "t=1,v1=test"},
            )
            assert response.status_code == 200

        response = await client.get(f"/api/v1/orders/{order_id}", headers=auth_headers)
        assert response.json()["status"] == "paid"

    async def test_invalid_signature(
        self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch
    ):
        def reject(payload, signature):
            raise ValueError("bad payload")

        monkeypatch.setattr(StripeGateway, "construct_event", staticmethod(reject))

        response = await client.post(
            "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "bad"}
        )
        assert response.status_code == 422
