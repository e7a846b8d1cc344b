"""
Schemas del servicio de facturación.
Exporta todos los schemas para fácil acceso.
"""

# Common
from app.schemas.common import (
    APIResponse,
    BaseSchema,
    ErrorResponse,
)

# Plans
from app.schemas.plan import (
    PLAN_AMOUNTS_CLP,
    PLANS,
    BillingInterval,
    PlanId,
    PlanLimits,
    SubscriptionPlan,
    get_chargeable_amount,
    get_plan,
    get_plan_amount,
)

# Billing
from app.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    InvoiceStatus,
    OneclickAuthorizeRequest,
    OneclickAuthorizeResponse,
    OneclickInscriptionFinishResponse,
    OneclickInscriptionStartRequest,
    OneclickInscriptionStartResponse,
    OneclickTransactionStatusResponse,
    PaymentMethodResponse,
    PaymentMethodsResponse,
    PaymentMethodType,
    PaymentResponse,
    PaymentStatus,
    PortalResponse,
    ProviderName,
    ProvidersResponse,
    SubscriptionResponse,
    SubscriptionStatus,
    WebhookAckResponse,
)

__all__ = [
    # Common
    "APIResponse",
    "BaseSchema",
    "ErrorResponse",
    # Plans
    "PLAN_AMOUNTS_CLP",
    "PLANS",
    "BillingInterval",
    "PlanId",
    "PlanLimits",
    "SubscriptionPlan",
    "get_chargeable_amount",
    "get_plan",
    "get_plan_amount",
    # Billing
    "CheckoutRequest",
    "CheckoutResponse",
    "InvoiceStatus",
    "OneclickAuthorizeRequest",
    "OneclickAuthorizeResponse",
    "OneclickInscriptionFinishResponse",
    "OneclickInscriptionStartRequest",
    "OneclickInscriptionStartResponse",
    "OneclickTransactionStatusResponse",
    "PaymentMethodResponse",
    "PaymentMethodsResponse",
    "PaymentMethodType",
    "PaymentResponse",
    "PaymentStatus",
    "PortalResponse",
    "ProviderName",
    "ProvidersResponse",
    "SubscriptionResponse",
    "SubscriptionStatus",
    "WebhookAckResponse",
]
