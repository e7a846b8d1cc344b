"""
Tests para los endpoints de la API.
"""

import json
import time

import httpx
import pytest
from httpx import AsyncClient

from conftest import GatewayStub, request_json

from app.adapters.transbank_adapter import ONECLICK_PATH, WEBPAY_PATH
from app.schemas.plan import PlanId
from app.services import PaymentService
from app.utils.correlation import build_compact_reference, build_reference
from app.utils.hmac_utils import generate_signature
from app.utils.idempotency import InMemoryIdempotencyManager


@pytest.fixture
def headers(tenant_id: str) -> dict[str, str]:
    return {"X-Tenant-ID": tenant_id, "X-User-Email": "owner@acme.cl"}


@pytest.fixture(autouse=True)
def idempotency(monkeypatch) -> InMemoryIdempotencyManager:
    manager = InMemoryIdempotencyManager()

    async def get_manager():
        return manager

    monkeypatch.setattr("app.routes.payments.get_idempotency_manager", get_manager)
    return manager


def transbank_checkout(gateway: GatewayStub, token: str = "tok_1") -> None:
    gateway.add("POST", WEBPAY_PATH, {
        "token": token,
        "url": "https://webpay3gint.transbank.cl/webpayserver/initTransaction",
    })


def transbank_commit(gateway: GatewayStub, tenant_id: str, token: str = "tok_1") -> None:
    gateway.add("PUT", f"{WEBPAY_PATH}/{token}", {
        "status": "AUTHORIZED",
        "response_code": 0,
        "amount": 29000,
        "buy_order": "O1700000000abcd1234",
        "session_id": build_compact_reference(tenant_id, PlanId.PRO),
        "authorization_code": "1213",
    })


class TestHealthEndpoints:
    """Tests para endpoints de health."""

    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["providers"] == ["stripe", "transbank", "mercadopago", "flow"]
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_health_lists_providers(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["providers"] == ["stripe", "transbank", "mercadopago", "flow"]

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: AsyncClient):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestCatalogEndpoints:
    @pytest.mark.asyncio
    async def test_list_plans(self, client: AsyncClient):
        response = await client.get("/api/payments/plans")

        assert response.status_code == 200
        plans = {plan["id"]: plan for plan in response.json()["data"]}
        assert set(plans) == {"FREE", "PRO", "BUSINESS", "ENTERPRISE"}
        assert plans["PRO"]["price"] == 29000
        assert plans["BUSINESS"]["currency"] == "CLP"

    @pytest.mark.asyncio
    async def test_providers_for_chile(self, client: AsyncClient):
        response = await client.get("/api/payments/providers", params={"region": "CL"})

        data = response.json()["data"]
        assert data["preferred"] == "transbank"
        assert data["region"] == "CL"
        assert len(data["available"]) == 4

    @pytest.mark.asyncio
    async def test_providers_for_other_region(self, client: AsyncClient):
        response = await client.get("/api/payments/providers", params={"region": "us"})

        data = response.json()["data"]
        assert data["preferred"] == "stripe"
        assert data["region"] == "US"

    @pytest.mark.asyncio
    async def test_providers_without_configuration(self, client: AsyncClient):
        from app.main import app
        app.state.payments = PaymentService({})

        response = await client.get("/api/payments/providers")

        data = response.json()["data"]
        assert data["available"] == []
        assert data["preferred"] is None


class TestCheckoutEndpoints:
    @pytest.mark.asyncio
    async def test_missing_tenant_header(self, client: AsyncClient):
        response = await client.post("/api/payments/checkout", json={"plan_id": "PRO"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_tenant_header(self, client: AsyncClient):
        response = await client.post(
            "/api/payments/checkout",
            json={"plan_id": "PRO"},
            headers={"X-Tenant-ID": "acme"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_id", ["ENTERPRISE", "FREE"])
    async def test_plan_not_purchasable(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict, plan_id: str
    ):
        response = await client.post(
            "/api/payments/checkout", json={"plan_id": plan_id}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["code"] == "PLAN_NOT_PURCHASABLE"
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_checkout_uses_preferred_provider(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict, tenant_id: str
    ):
        transbank_checkout(gateway)

        response = await client.post(
            "/api/payments/checkout", json={"plan_id": "PRO"}, headers=headers
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["provider"] == "transbank"
        assert data["plan_id"] == "PRO"
        assert data["session_id"] == "tok_1"
        assert data["checkout_url"].endswith("?token_ws=tok_1")

        body = request_json(gateway.calls("POST", WEBPAY_PATH)[0])
        assert body["return_url"] == "http://localhost:3000/billing/success"

    @pytest.mark.asyncio
    async def test_checkout_with_explicit_provider(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        gateway.add("POST", "/checkout/preferences", {
            "id": "pref_1",
            "init_point": "https://www.mercadopago.cl/checkout?pref_id=pref_1",
            "sandbox_init_point": "https://sandbox.mercadopago.cl/checkout?pref_id=pref_1",
        })

        response = await client.post(
            "/api/payments/checkout",
            json={
                "plan_id": "BUSINESS",
                "provider": "mercadopago",
                "success_url": "https://acme.cl/ok",
            },
            headers=headers,
        )

        assert response.status_code == 201
        assert response.json()["data"]["provider"] == "mercadopago"

        body = request_json(gateway.calls("POST", "/checkout/preferences")[0])
        assert body["back_urls"]["success"] == "https://acme.cl/ok"
        assert body["payer"] == {"email": "owner@acme.cl"}

    @pytest.mark.asyncio
    async def test_checkout_with_unconfigured_provider(self, client: AsyncClient, headers: dict):
        from app.main import app
        app.state.payments = PaymentService({})

        response = await client.post(
            "/api/payments/checkout",
            json={"plan_id": "PRO", "provider": "flow"},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "PROVIDER_NOT_CONFIGURED"

    @pytest.mark.asyncio
    async def test_checkout_without_any_provider(self, client: AsyncClient, headers: dict):
        from app.main import app
        app.state.payments = PaymentService({})

        response = await client.post(
            "/api/payments/checkout", json={"plan_id": "PRO"}, headers=headers
        )

        assert response.status_code == 503
        assert response.json()["code"] == "NO_PROVIDER_CONFIGURED"

    @pytest.mark.asyncio
    async def test_gateway_failure_returns_502(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        gateway.add("POST", WEBPAY_PATH, {"error_message": "boom"}, status_code=500)

        response = await client.post(
            "/api/payments/checkout", json={"plan_id": "PRO"}, headers=headers
        )

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "UPSTREAM_GATEWAY_ERROR"
        assert "boom" not in body["message"]

    @pytest.mark.asyncio
    async def test_idempotent_checkout(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        transbank_checkout(gateway)
        idempotent_headers = {**headers, "Idempotency-Key": "checkout-1"}

        first = await client.post(
            "/api/payments/checkout", json={"plan_id": "PRO"}, headers=idempotent_headers
        )
        second = await client.post(
            "/api/payments/checkout", json={"plan_id": "PRO"}, headers=idempotent_headers
        )

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["data"] == first.json()["data"]
        assert "idempotent" in second.json()["message"]
        assert len(gateway.calls("POST", WEBPAY_PATH)) == 1

    @pytest.mark.asyncio
    async def test_idempotency_key_in_progress(
        self,
        client: AsyncClient,
        headers: dict,
        tenant_id: str,
        idempotency: InMemoryIdempotencyManager,
    ):
        await idempotency.acquire_lock(tenant_id, "checkout-2")

        response = await client.post(
            "/api/payments/checkout",
            json={"plan_id": "PRO"},
            headers={**headers, "Idempotency-Key": "checkout-2"},
        )

        assert response.status_code == 409


class TestSubscriptionEndpoints:
    @pytest.mark.asyncio
    async def test_subscription_not_found(self, client: AsyncClient, headers: dict):
        response = await client.get("/api/payments/subscription", headers=headers)

        assert response.status_code == 404
        assert response.json()["code"] == "SUBSCRIPTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_transbank_return_activates_subscription(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict, tenant_id: str
    ):
        transbank_commit(gateway, tenant_id)

        webhook = await client.post("/api/webhooks/transbank", data={"token_ws": "tok_1"})

        assert webhook.status_code == 200
        assert webhook.json() == {"received": True, "processed": True, "duplicate": False}

        response = await client.get("/api/payments/subscription", headers=headers)
        assert response.status_code == 200
        subscription = response.json()["data"]
        assert subscription["provider"] == "transbank"
        assert subscription["plan_id"] == "PRO"
        assert subscription["status"] == "active"
        assert subscription["tenant_id"] == tenant_id

        history = await client.get("/api/payments/history", headers=headers)
        [payment] = history.json()["data"]
        assert payment["status"] == "succeeded"
        assert payment["amount"] == 29000

        # Re-entrega del mismo retorno
        again = await client.post("/api/webhooks/transbank", data={"token_ws": "tok_1"})
        assert again.json()["duplicate"] is True
        assert len(gateway.calls("PUT", f"{WEBPAY_PATH}/tok_1")) == 1

    @pytest.mark.asyncio
    async def test_cancel_subscription_locally(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict, tenant_id: str
    ):
        transbank_commit(gateway, tenant_id)
        await client.get("/api/webhooks/transbank", params={"token_ws": "tok_1"})

        response = await client.post("/api/payments/subscription/cancel", headers=headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "canceled"
        assert data["canceled_at"] is not None

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, client: AsyncClient, headers: dict):
        response = await client.post("/api/payments/subscription/cancel", headers=headers)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_portal_unsupported_for_transbank(self, client: AsyncClient, headers: dict):
        response = await client.get(
            "/api/payments/portal", params={"provider": "transbank"}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["code"] == "UNSUPPORTED_OPERATION"


class TestOneclickEndpoints:
    async def _enroll(self, client: AsyncClient, gateway: GatewayStub, headers: dict) -> dict:
        gateway.add("PUT", f"{ONECLICK_PATH}/inscriptions/ins_1", {
            "response_code": 0,
            "tbk_user": "tbk_user_1",
            "authorization_code": "1213",
            "card_type": "Visa",
            "card_number": "XXXXXXXXXXXX6623",
        })
        response = await client.put(
            "/api/payments/oneclick/inscriptions/ins_1", headers=headers
        )
        assert response.status_code == 200
        return response.json()["data"]["payment_method"]

    @pytest.mark.asyncio
    async def test_start_requires_email(self, client: AsyncClient, tenant_id: str):
        response = await client.post(
            "/api/payments/oneclick/inscriptions",
            json={},
            headers={"X-Tenant-ID": tenant_id},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_start_inscription(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict, tenant_id: str
    ):
        gateway.add("POST", f"{ONECLICK_PATH}/inscriptions", {
            "token": "ins_1",
            "url_webpay": "https://webpay3gint.transbank.cl/webpayserver/bp_multicode_inscription.cgi",
        })

        response = await client.post(
            "/api/payments/oneclick/inscriptions", json={}, headers=headers
        )

        assert response.status_code == 201
        assert response.json()["data"]["token"] == "ins_1"

        body = request_json(gateway.calls("POST", f"{ONECLICK_PATH}/inscriptions")[0])
        assert body["username"] == tenant_id.replace("-", "")
        assert len(body["username"]) <= 40
        assert body["email"] == "owner@acme.cl"
        assert body["response_url"] == "http://localhost:3000/billing/oneclick"

    @pytest.mark.asyncio
    async def test_finish_inscription_stores_default_card(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        method = await self._enroll(client, gateway, headers)

        assert method["type"] == "oneclick"
        assert method["last4"] == "6623"
        assert method["is_default"] is True

        response = await client.get("/api/payments/methods", headers=headers)
        [listed] = response.json()["data"]["data"]
        assert listed["id"] == method["id"]
        assert listed["source"] == "stored"

    @pytest.mark.asyncio
    async def test_rejected_inscription(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        gateway.add("PUT", f"{ONECLICK_PATH}/inscriptions/ins_bad", {"response_code": -1})

        response = await client.put(
            "/api/payments/oneclick/inscriptions/ins_bad", headers=headers
        )

        assert response.status_code == 400
        assert response.json()["code"] == "ONECLICK_REJECTED"

    @pytest.mark.asyncio
    async def test_authorize_and_status(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        method = await self._enroll(client, gateway, headers)

        def authorize(request: httpx.Request) -> httpx.Response:
            body = request_json(request)
            return httpx.Response(200, json={
                "buy_order": body["buy_order"],
                "details": [{
                    "response_code": 0,
                    "amount": body["details"][0]["amount"],
                    "buy_order": body["details"][0]["buy_order"],
                    "authorization_code": "1213",
                    "status": "AUTHORIZED",
                }],
            })

        gateway.on("POST", f"{ONECLICK_PATH}/transactions", authorize)

        response = await client.post(
            "/api/payments/oneclick/authorize",
            json={"payment_method_id": method["id"], "amount": 29000},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["authorization_code"] == "1213"
        assert data["payment"]["status"] == "succeeded"
        buy_order = data["payment"]["provider_payment_id"]

        gateway.add("GET", f"{ONECLICK_PATH}/transactions/{buy_order}", {
            "buy_order": buy_order,
            "details": [{"status": "AUTHORIZED", "amount": 29000, "authorization_code": "1213"}],
        })
        status_response = await client.get(
            f"/api/payments/oneclick/transactions/{buy_order}", headers=headers
        )

        assert status_response.status_code == 200
        assert status_response.json()["data"]["status"] == "AUTHORIZED"

    @pytest.mark.asyncio
    async def test_rejected_authorization_is_recorded(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        method = await self._enroll(client, gateway, headers)
        gateway.add("POST", f"{ONECLICK_PATH}/transactions", {
            "buy_order": "O1",
            "details": [{"response_code": -96, "amount": 29000, "status": "FAILED"}],
        })

        response = await client.post(
            "/api/payments/oneclick/authorize",
            json={"payment_method_id": method["id"], "amount": 29000},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "ONECLICK_REJECTED"

        history = await client.get("/api/payments/history", headers=headers)
        [payment] = history.json()["data"]
        assert payment["status"] == "failed"

    @pytest.mark.asyncio
    async def test_authorize_with_foreign_card(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        method = await self._enroll(client, gateway, headers)
        other_tenant = {"X-Tenant-ID": "00000000-0000-4000-8000-000000000001"}

        response = await client.post(
            "/api/payments/oneclick/authorize",
            json={"payment_method_id": method["id"], "amount": 29000},
            headers=other_tenant,
        )

        assert response.status_code == 404
        assert gateway.calls("POST", f"{ONECLICK_PATH}/transactions") == []

    @pytest.mark.asyncio
    async def test_status_of_foreign_transaction(self, client: AsyncClient, headers: dict):
        response = await client.get(
            "/api/payments/oneclick/transactions/O999", headers=headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "PAYMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_delete_inscription(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict
    ):
        method = await self._enroll(client, gateway, headers)
        gateway.add("DELETE", f"{ONECLICK_PATH}/inscriptions", None, status_code=204)

        response = await client.delete(
            f"/api/payments/oneclick/{method['id']}", headers=headers
        )

        assert response.status_code == 200
        body = request_json(gateway.calls("DELETE", f"{ONECLICK_PATH}/inscriptions")[0])
        assert body["tbk_user"] == "tbk_user_1"

        methods = await client.get("/api/payments/methods", headers=headers)
        assert methods.json()["data"]["data"] == []

    @pytest.mark.asyncio
    async def test_delete_unknown_method(self, client: AsyncClient, headers: dict):
        response = await client.delete(
            "/api/payments/methods/00000000-0000-4000-8000-000000000002", headers=headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "PAYMENT_METHOD_NOT_FOUND"


class TestWebhookEndpoints:
    @pytest.mark.asyncio
    async def test_stripe_bad_signature(self, client: AsyncClient):
        response = await client.post(
            "/api/webhooks/stripe",
            content=json.dumps({"id": "evt_1", "type": "invoice.paid"}),
            headers={"Stripe-Signature": "t=1,v1=bad"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "WEBHOOK_VERIFICATION_FAILED"

    @pytest.mark.asyncio
    async def test_stripe_invalid_json(self, client: AsyncClient):
        response = await client.post(
            "/api/webhooks/stripe",
            content=b"not json",
            headers={"Stripe-Signature": "t=1,v1=bad"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_stripe_signed_event(self, client: AsyncClient, headers: dict, tenant_id: str):
        payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "payment_status": "paid",
                "subscription": "sub_1",
                "customer": "cus_1",
                "metadata": {"tenantId": tenant_id, "planId": "BUSINESS"},
            }},
        })
        timestamp = int(time.time())
        signature = generate_signature(f"{timestamp}.{payload}", "whsec_test")

        response = await client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
        )

        assert response.status_code == 200
        subscription = await client.get("/api/payments/subscription", headers=headers)
        assert subscription.json()["data"]["plan_id"] == "BUSINESS"

    @pytest.mark.asyncio
    async def test_mercadopago_signed_payment(
        self, client: AsyncClient, gateway: GatewayStub, headers: dict, tenant_id: str
    ):
        gateway.add("GET", "/payments/999", {
            "id": 999,
            "status": "approved",
            "transaction_amount": 29000,
            "external_reference": build_reference(tenant_id, PlanId.PRO),
        })
        raw = json.dumps({"id": 555, "data": {"id": "999"}})
        ts = "1700000000"
        signature = f"ts={ts};v1={generate_signature(raw + ts, 'mp-secret')}"

        response = await client.post(
            "/api/webhooks/mercadopago",
            params={"topic": "payment"},
            content=raw,
            headers={"X-Signature": signature, "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["processed"] is True
        subscription = await client.get("/api/payments/subscription", headers=headers)
        assert subscription.json()["data"]["provider"] == "mercadopago"

    @pytest.mark.asyncio
    async def test_mercadopago_missing_signature(self, client: AsyncClient):
        response = await client.post(
            "/api/webhooks/mercadopago",
            content=json.dumps({"id": 1, "data": {"id": "1"}}),
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_flow_signed_confirmation(
        self,
        client: AsyncClient,
        gateway: GatewayStub,
        payments: PaymentService,
        headers: dict,
        tenant_id: str,
    ):
        gateway.add("GET", "/api/payment/getStatus", {
            "flowOrder": 8765,
            "status": 2,
            "amount": 29000,
            "optional": {"reference": build_reference(tenant_id, PlanId.PRO)},
        })
        body = {"token": "ftok_1", "timestamp": int(time.time())}
        signature = payments.get_provider("flow").sign_webhook_payload(body)

        response = await client.post(
            "/api/webhooks/flow",
            content=json.dumps(body),
            headers={"X-Signature": signature},
        )

        assert response.status_code == 200
        history = await client.get("/api/payments/history", headers=headers)
        assert history.json()["data"][0]["provider_payment_id"] == "8765"

    @pytest.mark.asyncio
    async def test_processing_failure_returns_500(self, client: AsyncClient, gateway: GatewayStub):
        gateway.add("PUT", f"{WEBPAY_PATH}/tok_9", {"error_message": "down"}, status_code=500)

        response = await client.post("/api/webhooks/transbank", data={"token_ws": "tok_9"})

        assert response.status_code == 500
        assert response.json()["code"] == "WEBHOOK_PROCESSING_FAILED"
