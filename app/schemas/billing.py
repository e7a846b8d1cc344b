"""
Schemas de facturación: enums de dominio y modelos de request/response.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.common import BaseSchema
from app.schemas.plan import PlanId


class ProviderName(str, Enum):
    """Pasarelas soportadas, en orden de declaración."""

    STRIPE = "stripe"
    TRANSBANK = "transbank"
    MERCADOPAGO = "mercadopago"
    FLOW = "flow"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    ONECLICK = "oneclick"


class PaymentStatus(str, Enum):
    """Estados posibles de un pago."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


# ============================================
# Request Schemas (entrada)
# ============================================

class CheckoutRequest(BaseSchema):
    """Request para iniciar el checkout de un plan."""

    plan_id: PlanId
    provider: ProviderName | None = Field(
        None,
        description="Pasarela a usar; si se omite se elige la preferida de la región",
    )
    region: str = Field("CL", min_length=2, max_length=2)
    success_url: str | None = None
    cancel_url: str | None = None


class OneclickInscriptionStartRequest(BaseSchema):
    response_url: str | None = Field(
        None,
        description="URL a la que Transbank redirige al terminar la inscripción",
    )


class OneclickAuthorizeRequest(BaseSchema):
    """Cobro con una tarjeta inscrita en Oneclick."""

    payment_method_id: UUID
    amount: int = Field(..., gt=0, description="Monto en CLP")
    commerce_code: str | None = Field(
        None,
        description="Código de comercio hijo; por defecto el de Oneclick",
    )


# ============================================
# Response Schemas (salida)
# ============================================

class CheckoutResponse(BaseSchema):
    session_id: str
    checkout_url: str
    plan_id: PlanId
    provider: ProviderName


class ProvidersResponse(BaseSchema):
    available: list[ProviderName]
    preferred: ProviderName | None = None
    region: str


class SubscriptionResponse(BaseSchema):
    """Suscripción del tenant."""

    id: UUID
    tenant_id: UUID
    provider: ProviderName
    provider_subscription_id: str | None = None
    provider_customer_id: str | None = None
    plan_id: PlanId
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None


class PaymentMethodResponse(BaseSchema):
    id: str
    provider: ProviderName
    type: PaymentMethodType
    last4: str | None = None
    brand: str | None = None
    is_default: bool = False
    source: Literal["stored", "provider"] = "stored"


class PaymentMethodsResponse(BaseModel):
    data: list[PaymentMethodResponse]


class PaymentResponse(BaseSchema):
    id: UUID
    provider: ProviderName
    provider_payment_id: str
    status: PaymentStatus
    amount: int
    currency: str
    processed_at: datetime | None = None


class PortalResponse(BaseModel):
    portal_url: str


class OneclickInscriptionStartResponse(BaseModel):
    token: str
    url: str


class OneclickInscriptionFinishResponse(BaseModel):
    success: bool = True
    payment_method: PaymentMethodResponse


class OneclickAuthorizeResponse(BaseModel):
    success: bool = True
    authorization_code: str | None = None
    payment: PaymentResponse


class OneclickTransactionStatusResponse(BaseModel):
    buy_order: str
    status: str | None = None
    amount: int | None = None
    authorization_code: str | None = None


class WebhookAckResponse(BaseModel):
    received: bool = True
    processed: bool
    duplicate: bool = False
