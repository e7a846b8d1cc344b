"""
Adapter para MercadoPago.
Checkout Pro (preferencias) para pagos únicos y preapprovals para cobros
recurrentes, vía la API REST con httpx.
"""

from datetime import datetime, timedelta, timezone
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
from app.config import HttpOptions, MercadoPagoConfig
from app.schemas.billing import PaymentStatus, ProviderName, SubscriptionStatus
from app.schemas.plan import PlanId, get_chargeable_amount, next_period_end
from app.utils.correlation import build_reference, parse_reference
from app.utils.exceptions import UpstreamGatewayError
from app.utils.hmac_utils import parse_signature_header, verify_signature


logger = structlog.get_logger(__name__)

API_BASE_URL = "https://api.mercadopago.com"


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class MercadoPagoAdapter(PaymentProvider):
    """
    Adapter para MercadoPago.

    El modo sandbox lo decide el prefijo del access token: solo los tokens
    PROD usan el init_point productivo.
    """

    # Estados de preapproval
    PREAPPROVAL_STATUS_MAP = {
        "authorized": SubscriptionStatus.ACTIVE,
        "pending": SubscriptionStatus.TRIALING,
        "paused": SubscriptionStatus.PAST_DUE,
        "cancelled": SubscriptionStatus.CANCELED,
    }

    # Estados de pago
    PAYMENT_STATUS_MAP = {
        "approved": PaymentStatus.SUCCEEDED,
        "rejected": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
    }

    def __init__(
        self,
        config: MercadoPagoConfig,
        http_options: HttpOptions | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        self._http = GatewayHttpClient(
            ProviderName.MERCADOPAGO,
            API_BASE_URL,
            headers={
                "Authorization": f"Bearer {config.access_token}",
                "Content-Type": "application/json",
            },
            options=http_options,
            transport=transport,
        )
        logger.info("MercadoPagoAdapter initialized", sandbox=config.is_test)

    @property
    def provider_name(self) -> ProviderName:
        return ProviderName.MERCADOPAGO

    def _checkout_url(self, response: dict[str, Any]) -> str:
        if self._config.is_test:
            return response.get("sandbox_init_point") or response["init_point"]
        return response["init_point"]

    @classmethod
    def map_preapproval_status(cls, status: str | None) -> SubscriptionStatus:
        return cls.PREAPPROVAL_STATUS_MAP.get(status or "", SubscriptionStatus.ACTIVE)

    @classmethod
    def map_payment_status(cls, status: str | None) -> PaymentStatus:
        return cls.PAYMENT_STATUS_MAP.get(status or "", PaymentStatus.PENDING)

    async def create_checkout_session(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """Crea una preferencia de Checkout Pro."""
        amount = get_chargeable_amount(plan_id)
        preference: dict[str, Any] = {
            "items": [
                {
                    "id": f"plan-{plan_id.value.lower()}",
                    "title": f"Plan {plan_id.value}",
                    "description": f"Suscripción al plan {plan_id.value}",
                    "quantity": 1,
                    "unit_price": amount,
                    "currency_id": "CLP",
                }
            ],
            "back_urls": {
                "success": options.success_url,
                "failure": options.cancel_url,
                "pending": options.success_url,
            },
            "auto_return": "approved",
            "metadata": {"tenantId": tenant_id, "planId": plan_id.value},
            "external_reference": build_reference(tenant_id, plan_id),
        }
        if options.metadata.get("email"):
            preference["payer"] = {"email": options.metadata["email"]}

        response = await self._http.request(
            "POST", "/checkout/preferences", "create checkout preference", json=preference
        )

        logger.info(
            "MercadoPago preference created",
            preference_id=response["id"],
            tenant_id=tenant_id,
            plan_id=plan_id.value,
        )

        return CheckoutSession(
            session_id=response["id"],
            checkout_url=self._checkout_url(response),
            plan_id=plan_id,
            provider=self.provider_name,
        )

    async def create_recurring_payment(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """Crea un preapproval mensual con vigencia de un año."""
        amount = get_chargeable_amount(plan_id)
        today = datetime.now(timezone.utc)

        preapproval = {
            "reason": f"Suscripción plan {plan_id.value}",
            "external_reference": build_reference(tenant_id, plan_id),
            "payer_email": options.metadata.get("email"),
            "back_url": options.success_url,
            "status": "pending",
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "transaction_amount": amount,
                "currency_id": "CLP",
                "start_date": today.isoformat(),
                "end_date": (today + timedelta(days=365)).isoformat(),
            },
        }

        response = await self._http.request(
            "POST", "/preapproval", "create preapproval", json=preapproval
        )

        return CheckoutSession(
            session_id=response["id"],
            checkout_url=self._checkout_url(response),
            plan_id=plan_id,
            provider=self.provider_name,
        )

    async def _fetch_preapproval(self, preapproval_id: str) -> dict[str, Any] | None:
        try:
            return await self._http.request(
                "GET", f"/preapproval/{preapproval_id}", "get preapproval"
            )
        except UpstreamGatewayError as e:
            if e.upstream_status == 404:
                return None
            raise

    def _to_subscription(self, preapproval: dict[str, Any]) -> Subscription:
        correlation = parse_reference(preapproval.get("external_reference"))
        return Subscription(
            id=str(preapproval["id"]),
            tenant_id=correlation.tenant_id if correlation else None,
            provider=self.provider_name,
            provider_subscription_id=str(preapproval["id"]),
            plan_id=correlation.plan_id if correlation else None,
            status=self.map_preapproval_status(preapproval.get("status")),
            current_period_start=_parse_datetime(preapproval.get("date_created")),
            current_period_end=_parse_datetime(preapproval.get("next_payment_date")),
        )

    async def get_subscription(self, provider_subscription_id: str) -> Subscription | None:
        preapproval = await self._fetch_preapproval(provider_subscription_id)
        if preapproval is None:
            return None
        return self._to_subscription(preapproval)

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        await self._http.request(
            "PUT",
            f"/preapproval/{provider_subscription_id}",
            "cancel preapproval",
            json={"status": "cancelled"},
        )
        logger.info(
            "MercadoPago preapproval cancelled",
            provider_subscription_id=provider_subscription_id,
        )

    async def list_payment_methods(self, tenant_id: str) -> list[PaymentMethod]:
        # Las tarjetas quedan asociadas a la cuenta MercadoPago del pagador
        return []

    def verify_webhook_signature(self, raw_payload: bytes | str, signature: str) -> bool:
        """
        Verifica el header X-Signature ("ts=...;v1=...").

        Firma esperada: HMAC-SHA256(secret, raw_payload + ts).
        """
        if not self._config.webhook_secret:
            logger.warning("No MercadoPago webhook secret configured")
            return False

        parts = parse_signature_header(signature or "")
        ts = parts.get("ts")
        v1 = parts.get("v1")
        if not ts or not v1:
            return False

        if isinstance(raw_payload, bytes):
            try:
                raw_payload = raw_payload.decode("utf-8")
            except UnicodeDecodeError:
                return False

        return verify_signature(f"{raw_payload}{ts}", v1, self._config.webhook_secret)

    async def get_portal_url(self, tenant_id: str) -> str:
        return ""

    def parse_webhook_event(
        self,
        data: dict[str, Any],
        event_type: str | None = None,
    ) -> WebhookEvent:
        """
        Clasifica la notificación.

        El tipo sale de `type`, luego `action`, luego el topic explícito.
        """
        resolved_type = data.get("type") or data.get("action") or event_type or "payment"
        resource_id = (data.get("data") or {}).get("id") or data.get("id")

        if data.get("id") is not None and data.get("data"):
            dedup_key = str(data["id"])
        elif resource_id is not None:
            dedup_key = f"{data.get('action') or resolved_type}:{resource_id}"
        else:
            dedup_key = None

        return WebhookEvent(
            provider=self.provider_name,
            event_type=resolved_type,
            data=data,
            provider_event_id=dedup_key,
        )

    @property
    def webhook_handlers(self) -> Mapping[str, WebhookHandler]:
        return {
            "payment": self._handle_payment_update,
            "payment.created": self._handle_payment_update,
            "payment.updated": self._handle_payment_update,
            "preapproval": self._handle_preapproval_update,
            "preapproval_created": self._handle_preapproval_update,
            "preapproval_updated": self._handle_preapproval_update,
            "subscription_preapproval": self._handle_preapproval_update,
        }

    @staticmethod
    def _resource_id(data: dict[str, Any]) -> str:
        resource_id = (data.get("data") or {}).get("id") or data.get("id")
        if resource_id is None:
            raise ValueError("Missing resource id in MercadoPago notification")
        return str(resource_id)

    async def _handle_payment_update(self, data: dict[str, Any]) -> list[StateUpdate]:
        payment_id = self._resource_id(data)
        payment = await self._http.request("GET", f"/payments/{payment_id}", "get payment")

        correlation = parse_reference(payment.get("external_reference"))
        if correlation is None:
            logger.info("MercadoPago payment without tenant reference", payment_id=payment_id)
            return []

        status = self.map_payment_status(payment.get("status"))
        now = datetime.now(timezone.utc)
        updates: list[StateUpdate] = [
            PaymentUpdate(
                tenant_id=correlation.tenant_id,
                provider=self.provider_name,
                provider_payment_id=str(payment.get("id", payment_id)),
                status=status,
                amount=int(payment.get("transaction_amount") or 0),
                currency=payment.get("currency_id") or "CLP",
                processed_at=now,
                metadata={"planId": correlation.plan_id.value, "status": payment.get("status")},
            )
        ]

        if status == PaymentStatus.SUCCEEDED:
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

    async def _handle_preapproval_update(self, data: dict[str, Any]) -> list[StateUpdate]:
        preapproval_id = self._resource_id(data)
        preapproval = await self._fetch_preapproval(preapproval_id)
        if preapproval is None:
            logger.warning("MercadoPago preapproval not found", preapproval_id=preapproval_id)
            return []

        subscription = self._to_subscription(preapproval)
        if subscription.tenant_id is None:
            logger.info(
                "MercadoPago preapproval without tenant reference",
                preapproval_id=preapproval_id,
            )
            return []

        canceled = subscription.status == SubscriptionStatus.CANCELED
        return [
            SubscriptionUpdate(
                tenant_id=subscription.tenant_id,
                provider=self.provider_name,
                status=subscription.status,
                plan_id=subscription.plan_id,
                provider_subscription_id=subscription.provider_subscription_id,
                provider_customer_id=str(preapproval["payer_id"]) if preapproval.get("payer_id") else None,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                canceled_at=datetime.now(timezone.utc) if canceled else None,
            )
        ]

    async def aclose(self) -> None:
        await self._http.aclose()
