"""
Adapter para Stripe.
Implementa PaymentProvider usando el SDK oficial de Stripe.
"""

from datetime import datetime, timezone
from typing import Any, Mapping

import stripe
import structlog

from app.adapters.base import (
    CheckoutOptions,
    CheckoutSession,
    InvoiceUpdate,
    PaymentMethod,
    PaymentProvider,
    PaymentUpdate,
    StateUpdate,
    Subscription,
    SubscriptionUpdate,
    WebhookEvent,
    WebhookHandler,
)
from app.config import StripeConfig
from app.schemas.billing import (
    InvoiceStatus,
    PaymentMethodType,
    PaymentStatus,
    ProviderName,
    SubscriptionStatus,
)
from app.schemas.plan import PlanId, coerce_plan_id
from app.utils.exceptions import ConfigurationError, UpstreamGatewayError


logger = structlog.get_logger(__name__)


def _as_dict(obj: Any) -> dict[str, Any]:
    """Convierte un StripeObject (o dict) a dict plano."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripeAdapter(PaymentProvider):
    """
    Adapter para Stripe Billing.

    Usa Checkout Session en modo suscripción. El tenant y el plan viajan
    en la metadata de la sesión y de la suscripción.
    """

    # Mapeo de estados de Stripe a estados internos
    STATUS_MAP = {
        "trialing": SubscriptionStatus.TRIALING,
        "active": SubscriptionStatus.ACTIVE,
        "past_due": SubscriptionStatus.PAST_DUE,
        "canceled": SubscriptionStatus.CANCELED,
        "unpaid": SubscriptionStatus.UNPAID,
        "incomplete": SubscriptionStatus.INCOMPLETE,
        "incomplete_expired": SubscriptionStatus.INCOMPLETE,
        "paused": SubscriptionStatus.PAST_DUE,
    }

    def __init__(self, config: StripeConfig):
        """
        Inicializa el adapter de Stripe.

        Args:
            config: Credenciales, price ids y URL de retorno del portal
        """
        self._config = config

        # Configurar cliente de Stripe
        stripe.api_key = config.secret_key
        stripe.max_network_retries = config.max_network_retries

        logger.info(
            "StripeAdapter initialized",
            plans_with_price=sorted(config.price_ids),
        )

    @property
    def provider_name(self) -> ProviderName:
        return ProviderName.STRIPE

    def has_price_for(self, plan_id: PlanId) -> bool:
        return bool(self._config.price_ids.get(plan_id.value))

    def _price_id_for(self, plan_id: PlanId) -> str:
        price_id = self._config.price_ids.get(plan_id.value)
        if not price_id:
            raise ConfigurationError(f"No price ID configured for plan: {plan_id.value}")
        return price_id

    def _find_customer(self, tenant_id: str) -> Any | None:
        """Busca el customer de Stripe asociado al tenant (metadata tenantId)."""
        result = stripe.Customer.search(
            query=f"metadata['tenantId']:'{tenant_id}'",
            limit=1,
        )
        data = _as_dict(result).get("data") or []
        return data[0] if data else None

    def _get_or_create_customer(self, tenant_id: str, email: str | None = None) -> Any:
        customer = self._find_customer(tenant_id)
        if customer is not None:
            return customer

        params: dict[str, Any] = {"metadata": {"tenantId": tenant_id}}
        if email:
            params["email"] = email

        customer = stripe.Customer.create(**params)
        logger.info("Stripe customer created", tenant_id=tenant_id)
        return customer

    async def create_checkout_session(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """Crea una Stripe Checkout Session en modo suscripción."""
        price_id = self._price_id_for(plan_id)
        correlation = {"tenantId": tenant_id, "planId": plan_id.value}

        try:
            customer = self._get_or_create_customer(
                tenant_id,
                email=options.metadata.get("email"),
            )

            session = stripe.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                customer=customer["id"],
                client_reference_id=tenant_id,
                success_url=options.success_url,
                cancel_url=options.cancel_url,
                metadata=correlation,
                subscription_data={"metadata": correlation},
            )

        except stripe.StripeError as e:
            logger.error(
                "Stripe checkout creation failed",
                error=str(e),
                tenant_id=tenant_id,
                plan_id=plan_id.value,
            )
            raise UpstreamGatewayError(
                self.provider_name.value,
                "create checkout session",
                detail=str(e),
            ) from e

        logger.info(
            "Stripe Checkout Session created",
            session_id=session["id"],
            tenant_id=tenant_id,
            plan_id=plan_id.value,
        )

        return CheckoutSession(
            session_id=session["id"],
            checkout_url=session["url"],
            plan_id=plan_id,
            provider=self.provider_name,
        )

    def _to_subscription(self, data: dict[str, Any]) -> Subscription:
        metadata = data.get("metadata") or {}
        period_start = data.get("current_period_start")
        period_end = data.get("current_period_end")

        # Versiones recientes de la API mueven el periodo a los items
        items = (data.get("items") or {}).get("data") or []
        if items and period_start is None:
            period_start = items[0].get("current_period_start")
            period_end = items[0].get("current_period_end")

        return Subscription(
            id=data["id"],
            tenant_id=metadata.get("tenantId"),
            provider=self.provider_name,
            provider_subscription_id=data["id"],
            plan_id=coerce_plan_id(metadata["planId"]) if metadata.get("planId") else None,
            status=self.STATUS_MAP.get(data.get("status", ""), SubscriptionStatus.INCOMPLETE),
            current_period_start=_from_timestamp(period_start),
            current_period_end=_from_timestamp(period_end),
        )

    async def get_subscription(self, provider_subscription_id: str) -> Subscription | None:
        try:
            subscription = stripe.Subscription.retrieve(provider_subscription_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise UpstreamGatewayError(
                self.provider_name.value, "retrieve subscription", detail=str(e)
            ) from e
        except stripe.StripeError as e:
            logger.error("Failed to retrieve Stripe subscription", error=str(e))
            raise UpstreamGatewayError(
                self.provider_name.value, "retrieve subscription", detail=str(e)
            ) from e

        return self._to_subscription(_as_dict(subscription))

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(provider_subscription_id)
        except stripe.StripeError as e:
            logger.error(
                "Failed to cancel Stripe subscription",
                error=str(e),
                provider_subscription_id=provider_subscription_id,
            )
            raise UpstreamGatewayError(
                self.provider_name.value, "cancel subscription", detail=str(e)
            ) from e

        logger.info(
            "Stripe subscription canceled",
            provider_subscription_id=provider_subscription_id,
        )

    async def list_payment_methods(self, tenant_id: str) -> list[PaymentMethod]:
        """Tarjetas del customer del tenant; lista vacía si no hay customer."""
        try:
            customer = self._find_customer(tenant_id)
            if customer is None:
                return []

            customer_data = _as_dict(customer)
            default_id = (customer_data.get("invoice_settings") or {}).get(
                "default_payment_method"
            )
            methods = stripe.Customer.list_payment_methods(customer_data["id"], type="card")

        except stripe.StripeError as e:
            logger.error("Failed to list Stripe payment methods", error=str(e))
            raise UpstreamGatewayError(
                self.provider_name.value, "list payment methods", detail=str(e)
            ) from e

        result = []
        for method in _as_dict(methods).get("data", []):
            method = _as_dict(method)
            card = method.get("card") or {}
            result.append(
                PaymentMethod(
                    id=method["id"],
                    type=PaymentMethodType.CARD,
                    provider=self.provider_name,
                    last4=card.get("last4"),
                    brand=card.get("brand"),
                    is_default=method["id"] == default_id,
                )
            )
        return result

    def verify_webhook_signature(self, raw_payload: bytes | str, signature: str) -> bool:
        """Verifica el header Stripe-Signature (HMAC con timestamp, tolerancia 300 s)."""
        if not self._config.webhook_secret:
            logger.warning("No Stripe webhook secret configured")
            return False

        try:
            stripe.Webhook.construct_event(
                payload=raw_payload,
                sig_header=signature,
                secret=self._config.webhook_secret,
            )
            return True
        except (stripe.SignatureVerificationError, ValueError, TypeError) as e:
            logger.warning("Invalid Stripe webhook signature", error_type=type(e).__name__)
            return False

    async def get_portal_url(self, tenant_id: str) -> str:
        try:
            customer = self._find_customer(tenant_id)
            if customer is None:
                return ""

            session = stripe.billing_portal.Session.create(
                customer=customer["id"],
                return_url=self._config.portal_return_url,
            )
        except stripe.StripeError as e:
            logger.error("Failed to create Stripe portal session", error=str(e))
            raise UpstreamGatewayError(
                self.provider_name.value, "create portal session", detail=str(e)
            ) from e

        return session["url"]

    def parse_webhook_event(
        self,
        data: dict[str, Any],
        event_type: str | None = None,
    ) -> WebhookEvent:
        return WebhookEvent(
            provider=self.provider_name,
            event_type=event_type or data.get("type", ""),
            data=data,
            provider_event_id=data.get("id"),
        )

    @property
    def webhook_handlers(self) -> Mapping[str, WebhookHandler]:
        return {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_updated,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_failed,
        }

    # ============================================
    # Handlers de eventos
    # ============================================

    @staticmethod
    def _event_object(data: dict[str, Any]) -> dict[str, Any]:
        return (data.get("data") or {}).get("object") or {}

    async def _handle_checkout_completed(self, data: dict[str, Any]) -> list[StateUpdate]:
        session = self._event_object(data)
        metadata = session.get("metadata") or {}
        tenant_id = metadata.get("tenantId")
        plan_id = coerce_plan_id(metadata.get("planId") or "")

        if not tenant_id or plan_id is None:
            logger.warning("Missing metadata in checkout session", session_id=session.get("id"))
            return []

        # Las fechas del periodo llegan en customer.subscription.*
        status = (
            SubscriptionStatus.ACTIVE
            if session.get("payment_status") in ("paid", "no_payment_required")
            else SubscriptionStatus.INCOMPLETE
        )
        return [
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=self.provider_name,
                status=status,
                plan_id=plan_id,
                provider_subscription_id=session.get("subscription"),
                provider_customer_id=session.get("customer"),
                metadata={"checkoutSessionId": session.get("id")},
            )
        ]

    def _subscription_update(
        self,
        subscription: dict[str, Any],
        status: SubscriptionStatus | None = None,
    ) -> SubscriptionUpdate | None:
        parsed = self._to_subscription(subscription)
        if not parsed.tenant_id:
            logger.warning("Missing metadata in subscription", subscription_id=parsed.id)
            return None

        return SubscriptionUpdate(
            tenant_id=parsed.tenant_id,
            provider=self.provider_name,
            status=status or parsed.status,
            plan_id=parsed.plan_id,
            provider_subscription_id=parsed.provider_subscription_id,
            provider_customer_id=subscription.get("customer"),
            current_period_start=parsed.current_period_start,
            current_period_end=parsed.current_period_end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            canceled_at=_from_timestamp(subscription.get("canceled_at")),
        )

    async def _handle_subscription_updated(self, data: dict[str, Any]) -> list[StateUpdate]:
        update = self._subscription_update(self._event_object(data))
        return [update] if update else []

    async def _handle_subscription_deleted(self, data: dict[str, Any]) -> list[StateUpdate]:
        update = self._subscription_update(
            self._event_object(data),
            status=SubscriptionStatus.CANCELED,
        )
        if update is None:
            return []
        if update.canceled_at is None:
            update.canceled_at = datetime.now(timezone.utc)
        return [update]

    @staticmethod
    def _invoice_context(invoice: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recupera (tenant_id, subscription_id) desde una factura."""
        details = invoice.get("subscription_details") or (
            (invoice.get("parent") or {}).get("subscription_details") or {}
        )
        metadata = details.get("metadata") or invoice.get("metadata") or {}
        subscription_id = invoice.get("subscription") or details.get("subscription")
        return metadata.get("tenantId"), subscription_id

    def _invoice_updates(
        self,
        invoice: dict[str, Any],
        paid: bool,
    ) -> list[StateUpdate]:
        tenant_id, subscription_id = self._invoice_context(invoice)
        if not tenant_id:
            logger.warning("No tenant metadata in invoice", invoice_id=invoice.get("id"))
            return []

        now = datetime.now(timezone.utc)
        currency = (invoice.get("currency") or "clp").upper()
        amount = invoice.get("amount_paid") if paid else invoice.get("amount_due")
        updates: list[StateUpdate] = [
            InvoiceUpdate(
                tenant_id=tenant_id,
                provider=self.provider_name,
                provider_invoice_id=invoice["id"],
                status=InvoiceStatus.PAID if paid else InvoiceStatus.OPEN,
                subtotal=invoice.get("subtotal") or 0,
                tax=invoice.get("tax") or 0,
                total=invoice.get("total") or 0,
                currency=currency,
                paid_at=now if paid else None,
            ),
            PaymentUpdate(
                tenant_id=tenant_id,
                provider=self.provider_name,
                provider_payment_id=invoice.get("payment_intent") or invoice["id"],
                status=PaymentStatus.SUCCEEDED if paid else PaymentStatus.FAILED,
                amount=amount or 0,
                currency=currency,
                processed_at=now,
                metadata={"invoiceId": invoice["id"]},
            ),
        ]

        if subscription_id:
            updates.append(
                SubscriptionUpdate(
                    tenant_id=tenant_id,
                    provider=self.provider_name,
                    status=SubscriptionStatus.ACTIVE if paid else SubscriptionStatus.PAST_DUE,
                    provider_subscription_id=subscription_id,
                    provider_customer_id=invoice.get("customer"),
                )
            )
        return updates

    async def _handle_invoice_paid(self, data: dict[str, Any]) -> list[StateUpdate]:
        return self._invoice_updates(self._event_object(data), paid=True)

    async def _handle_invoice_failed(self, data: dict[str, Any]) -> list[StateUpdate]:
        return self._invoice_updates(self._event_object(data), paid=False)
