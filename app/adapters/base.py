"""
Interfaz base abstracta para proveedores de pago.
Define el contrato que todos los adapters deben implementar.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

import structlog

from app.schemas.billing import (
    InvoiceStatus,
    PaymentMethodType,
    PaymentStatus,
    ProviderName,
    SubscriptionStatus,
)
from app.schemas.plan import PlanId


logger = structlog.get_logger(__name__)


@dataclass
class CheckoutOptions:
    """Opciones del checkout provistas por la capa REST."""

    success_url: str
    cancel_url: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    """Sesión de checkout creada en la pasarela. No se persiste."""

    session_id: str
    checkout_url: str
    plan_id: PlanId
    provider: ProviderName


@dataclass
class Subscription:
    """Suscripción tal como la reporta la pasarela."""

    id: str
    tenant_id: str | None
    provider: ProviderName
    provider_subscription_id: str
    plan_id: PlanId | None
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None


@dataclass
class PaymentMethod:
    id: str
    type: PaymentMethodType
    provider: ProviderName
    last4: str | None = None
    brand: str | None = None
    is_default: bool = False


@dataclass
class WebhookEvent:
    """
    Notificación recibida de una pasarela.

    `provider_event_id` es la clave de deduplicación estable por proveedor.
    """

    provider: ProviderName
    event_type: str
    data: dict[str, Any]
    provider_event_id: str | None = None


# ============================================
# Cambios de estado derivados de un webhook
# ============================================

@dataclass
class SubscriptionUpdate:
    """Upsert de la suscripción del tenant (una por tenant)."""

    tenant_id: str
    provider: ProviderName
    status: SubscriptionStatus
    plan_id: PlanId | None = None
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    canceled_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentUpdate:
    """Upsert de un pago, identificado por (provider, provider_payment_id)."""

    tenant_id: str
    provider: ProviderName
    provider_payment_id: str
    status: PaymentStatus
    amount: int
    currency: str = "CLP"
    processed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class InvoiceUpdate:
    """Upsert de una factura, identificada por (provider, provider_invoice_id)."""

    tenant_id: str
    provider: ProviderName
    provider_invoice_id: str
    status: InvoiceStatus
    subtotal: int
    tax: int
    total: int
    currency: str
    paid_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


StateUpdate = SubscriptionUpdate | PaymentUpdate | InvoiceUpdate


@dataclass
class WebhookResult:
    """Resultado del manejo de un webhook."""

    success: bool
    processed: bool
    error: str | None = None
    duplicate: bool = False
    updates: list[StateUpdate] = field(default_factory=list)

    @classmethod
    def handled(cls, updates: list[StateUpdate] | None = None) -> "WebhookResult":
        return cls(success=True, processed=True, updates=list(updates or []))

    @classmethod
    def failed(cls, error: str) -> "WebhookResult":
        return cls(success=False, processed=False, error=error)


WebhookHandler = Callable[[dict[str, Any]], Awaitable[list[StateUpdate]]]


class PaymentProvider(ABC):
    """
    Interfaz abstracta para proveedores de pago.

    Todos los adapters de pasarelas (Stripe, Transbank, MercadoPago, Flow)
    implementan esta interfaz. Ningún adapter accede a la base de datos:
    los webhooks retornan los cambios de estado y el dispatcher los aplica.
    """

    @property
    @abstractmethod
    def provider_name(self) -> ProviderName:
        """Nombre del proveedor."""
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """
        Crea una sesión de checkout para contratar un plan.

        El tenant y el plan quedan codificados en el campo de correlación
        nativo de la pasarela.

        Raises:
            ConfigurationError: Si el plan no tiene precio o monto cobrable
            UpstreamGatewayError: Si la pasarela falla
        """
        pass

    @abstractmethod
    async def get_subscription(self, provider_subscription_id: str) -> Subscription | None:
        """Obtiene una suscripción; None si no existe o no aplica."""
        pass

    @abstractmethod
    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        pass

    @abstractmethod
    async def list_payment_methods(self, tenant_id: str) -> list[PaymentMethod]:
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes | str, signature: str) -> bool:
        """
        Verifica la firma de un webhook.

        Nunca lanza excepción: cualquier error de formato retorna False.
        """
        pass

    @abstractmethod
    async def get_portal_url(self, tenant_id: str) -> str:
        """URL del portal de cliente, o "" si la pasarela no tiene portal."""
        pass

    @abstractmethod
    def parse_webhook_event(
        self,
        data: dict[str, Any],
        event_type: str | None = None,
    ) -> WebhookEvent:
        """
        Clasifica una notificación y deriva su clave de deduplicación.

        Args:
            data: Cuerpo ya parseado de la notificación
            event_type: Tipo explícito (ej: topic de la query string)
        """
        pass

    @property
    @abstractmethod
    def webhook_handlers(self) -> Mapping[str, WebhookHandler]:
        """Handlers por tipo de evento."""
        pass

    async def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        """
        Despacha el evento a su handler según `event.event_type`.

        Tipos desconocidos se registran y se reportan como procesados.
        Las excepciones del handler se capturan y se retornan como
        resultado fallido.
        """
        handler = self.webhook_handlers.get(event.event_type)
        if handler is None:
            logger.info(
                "Unhandled webhook event type",
                provider=self.provider_name.value,
                event_type=event.event_type,
            )
            return WebhookResult.handled()

        try:
            updates = await handler(event.data)
        except Exception as e:
            logger.error(
                "Webhook handler failed",
                provider=self.provider_name.value,
                event_type=event.event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return WebhookResult.failed(str(e) or type(e).__name__)

        return WebhookResult.handled(updates)

    async def aclose(self) -> None:
        """Libera clientes HTTP propios del adapter."""
        return None
