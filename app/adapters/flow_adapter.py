"""
Adapter para Flow (flow.cl).

Los requests a Flow van firmados: HMAC-SHA256 sobre la concatenación
`clave + valor` de los parámetros ordenados, enviada en el parámetro `s`.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import structlog

from app.adapters.base import (
    CheckoutOptions,
    CheckoutSession,
    PaymentMethod,
    PaymentProvider,
    PaymentUpdate,
    StateUpdate,
    Subscription,
    SubscriptionUpdate,
    WebhookEvent,
    WebhookHandler,
)
from app.adapters.http_client import GatewayHttpClient
from app.config import FlowConfig, HttpOptions
from app.schemas.billing import PaymentStatus, ProviderName, SubscriptionStatus
from app.schemas.plan import PlanId, get_chargeable_amount, next_period_end
from app.utils.correlation import Correlation, build_reference, new_buy_order, parse_reference
from app.utils.exceptions import UnsupportedOperationError
from app.utils.hmac_utils import generate_signature, sign_params, verify_signature


logger = structlog.get_logger(__name__)

BASE_URLS = {
    "TEST": "https://sandbox.flow.cl/api",
    "LIVE": "https://www.flow.cl/api",
}

# Códigos de estado de pago de Flow
FLOW_STATUS_DESCRIPTIONS = {
    1: "Created",
    2: "Paid",
    3: "Rejected",
    4: "Pending",
    5: "Failed",
    6: "Cancelled",
    7: "Refunded",
}

FLOW_STATUS_MAP = {
    1: PaymentStatus.PENDING,
    2: PaymentStatus.SUCCEEDED,
    3: PaymentStatus.FAILED,
    4: PaymentStatus.PENDING,
    5: PaymentStatus.FAILED,
    6: PaymentStatus.FAILED,
    7: PaymentStatus.REFUNDED,
}

# Medio de pago 9 = todos los medios habilitados en el comercio
PAYMENT_METHOD_ALL = 9


def _js_number(value: Any) -> Any:
    """Números como los serializa JSON.stringify: 29000.0 se escribe 29000."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {key: _js_number(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_js_number(item) for item in value]
    return value


def compact_json(data: Any) -> str:
    return json.dumps(_js_number(data), separators=(",", ":"), ensure_ascii=False)


def webhook_signing_payload(body: dict[str, Any]) -> str:
    return compact_json(body) + str(_js_number(body["timestamp"]))


@dataclass
class FlowPaymentStatus:
    """Respuesta de /payment/getStatus."""

    status: int
    flow_order: int | None
    commerce_order: str | None
    amount: int
    date: str | None = None
    payer: str | None = None
    optional: dict[str, Any] = field(default_factory=dict)

    @property
    def status_description(self) -> str:
        return FLOW_STATUS_DESCRIPTIONS.get(self.status, "Unknown")

    @property
    def payment_status(self) -> PaymentStatus:
        return FLOW_STATUS_MAP.get(self.status, PaymentStatus.PENDING)

    def correlation(self) -> Correlation | None:
        reference = self.optional.get("reference") if self.optional else None
        return parse_reference(reference) or parse_reference(self.commerce_order)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "FlowPaymentStatus":
        optional = data.get("optional") or {}
        if isinstance(optional, str):
            try:
                optional = json.loads(optional)
            except ValueError:
                optional = {}
        return cls(
            status=int(data.get("status") or 0),
            flow_order=data.get("flowOrder"),
            commerce_order=data.get("commerceOrder"),
            amount=int(float(data.get("amount") or 0)),
            date=data.get("requestDate") or data.get("date"),
            payer=data.get("payer"),
            optional=optional if isinstance(optional, dict) else {},
        )


class FlowAdapter(PaymentProvider):
    """
    Adapter para Flow.

    Flow no tiene suscripciones nativas ni portal de cliente.
    """

    def __init__(
        self,
        config: FlowConfig,
        http_options: HttpOptions | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        self._http = GatewayHttpClient(
            ProviderName.FLOW,
            BASE_URLS["LIVE" if config.environment == "LIVE" else "TEST"],
            options=http_options,
            transport=transport,
        )
        logger.info("FlowAdapter initialized", environment=config.environment)

    @property
    def provider_name(self) -> ProviderName:
        return ProviderName.FLOW

    def _signed(self, params: dict[str, Any]) -> dict[str, Any]:
        """Agrega apiKey y la firma `s` a los parámetros."""
        payload = {key: value for key, value in params.items() if value is not None}
        payload["apiKey"] = self._config.api_key
        payload["s"] = sign_params(payload, self._config.secret)
        return payload

    async def create_checkout_session(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """
        Crea un pago en Flow.

        commerceOrder admite 45 caracteres, así que la referencia tenant/plan
        viaja en `optional` y se recupera desde getStatus.
        """
        amount = get_chargeable_amount(plan_id)
        commerce_order = new_buy_order("F")
        optional = {
            "reference": build_reference(tenant_id, plan_id),
            "tenantId": tenant_id,
            "planId": plan_id.value,
        }

        response = await self._http.request(
            "POST",
            "/payment/create",
            "create payment",
            data=self._signed(
                {
                    "commerceOrder": commerce_order,
                    "subject": f"Plan {plan_id.value}",
                    "currency": "CLP",
                    "amount": amount,
                    "email": options.metadata.get("email") or None,
                    "paymentMethod": PAYMENT_METHOD_ALL,
                    "urlConfirmation": self._config.confirmation_url or options.success_url,
                    "urlReturn": options.success_url,
                    "optional": compact_json(optional),
                }
            ),
        )

        token = response["token"]
        logger.info(
            "Flow payment created",
            commerce_order=commerce_order,
            flow_order=response.get("flowOrder"),
            tenant_id=tenant_id,
            plan_id=plan_id.value,
        )

        return CheckoutSession(
            session_id=token,
            checkout_url=f"{response['url']}?token={token}",
            plan_id=plan_id,
            provider=self.provider_name,
        )

    async def create_recurring_payment(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        # Sin cobro recurrente nativo: se emite un pago único
        return await self.create_checkout_session(plan_id, tenant_id, options)

    async def get_subscription(self, provider_subscription_id: str) -> Subscription | None:
        return None

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        raise UnsupportedOperationError(self.provider_name.value, "cancel_subscription")

    async def list_payment_methods(self, tenant_id: str) -> list[PaymentMethod]:
        return []

    def verify_webhook_signature(self, raw_payload: bytes | str, signature: str) -> bool:
        """
        Firma esperada: HMAC-SHA256(secret, json_compacto(body) + str(body.timestamp)).

        JSON inválido o sin timestamp retorna False.
        """
        try:
            body = json.loads(raw_payload)
        except (ValueError, TypeError):
            return False

        if not isinstance(body, dict) or body.get("timestamp") is None:
            return False

        return verify_signature(
            webhook_signing_payload(body), signature or "", self._config.secret
        )

    def sign_webhook_payload(self, body: dict[str, Any]) -> str:
        """Firma un cuerpo de webhook como lo verifica verify_webhook_signature."""
        return generate_signature(webhook_signing_payload(body), self._config.secret)

    async def get_portal_url(self, tenant_id: str) -> str:
        return ""

    def parse_webhook_event(
        self,
        data: dict[str, Any],
        event_type: str | None = None,
    ) -> WebhookEvent:
        if event_type is None:
            candidate = data.get("event") or data.get("type") or data.get("status")
            if isinstance(candidate, str) and candidate in self.webhook_handlers:
                event_type = candidate
            else:
                event_type = "payment.updated"

        token = data.get("token")
        return WebhookEvent(
            provider=self.provider_name,
            event_type=event_type,
            data=data,
            provider_event_id=f"{event_type}:{token}" if token else None,
        )

    @property
    def webhook_handlers(self) -> Mapping[str, WebhookHandler]:
        return {
            "payment.created": self._handle_payment_created,
            "payment.updated": self._handle_payment_status,
            "payment.status": self._handle_payment_status,
            "payment.success": self._handle_payment_status,
            "payment.error": self._handle_payment_error,
        }

    async def _handle_payment_created(self, data: dict[str, Any]) -> list[StateUpdate]:
        logger.info("Flow payment created notification", token_present=bool(data.get("token")))
        return []

    async def _handle_payment_status(self, data: dict[str, Any]) -> list[StateUpdate]:
        token = data.get("token")
        if not token:
            raise ValueError("Missing token in Flow notification")

        status = await self.get_payment_status(token)
        correlation = status.correlation()
        if correlation is None:
            logger.warning("Flow payment without tenant reference", flow_order=status.flow_order)
            return []

        now = datetime.now(timezone.utc)
        payment_status = status.payment_status
        updates: list[StateUpdate] = [
            PaymentUpdate(
                tenant_id=correlation.tenant_id,
                provider=self.provider_name,
                provider_payment_id=str(status.flow_order or token),
                status=payment_status,
                amount=status.amount,
                processed_at=now,
                metadata={
                    "token": token,
                    "commerceOrder": status.commerce_order,
                    "flowStatus": status.status_description,
                    "planId": correlation.plan_id.value,
                },
            )
        ]

        if payment_status == PaymentStatus.SUCCEEDED:
            updates.append(
                SubscriptionUpdate(
                    tenant_id=correlation.tenant_id,
                    provider=self.provider_name,
                    status=SubscriptionStatus.ACTIVE,
                    plan_id=correlation.plan_id,
                    current_period_start=now,
                    current_period_end=next_period_end(now, correlation.plan_id),
                    cancel_at_period_end=False,
                )
            )
        return updates

    async def _handle_payment_error(self, data: dict[str, Any]) -> list[StateUpdate]:
        logger.warning("Flow payment error notification", token_present=bool(data.get("token")))
        if not data.get("token"):
            return []
        return await self._handle_payment_status(data)

    async def get_payment_status(self, token: str) -> FlowPaymentStatus:
        response = await self._http.request(
            "GET",
            "/payment/getStatus",
            "get payment status",
            params=self._signed({"token": token}),
        )
        return FlowPaymentStatus.from_response(response or {})

    async def refund_payment(self, token: str, amount: int | None = None) -> dict[str, Any]:
        """
        Reembolsa un pago. Sin `amount` el reembolso es total.

        Flow identifica el reembolso por orden de comercio y correo del pagador,
        que se obtienen del estado del pago.
        """
        status = await self.get_payment_status(token)
        response = await self._http.request(
            "POST",
            "/refund/create",
            "create refund",
            data=self._signed(
                {
                    "refundCommerceOrder": new_buy_order("R"),
                    "receiverEmail": status.payer,
                    "amount": amount if amount is not None else status.amount,
                    "urlCallBack": self._config.confirmation_url,
                    "commerceTrxId": status.commerce_order,
                    "flowTrxId": status.flow_order,
                }
            ),
        )
        logger.info("Flow refund requested", flow_order=status.flow_order)
        return response or {}

    async def aclose(self) -> None:
        await self._http.aclose()
