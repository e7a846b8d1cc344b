"""
Adapters para proveedores de pago.
Implementación del patrón Adapter para abstraer diferentes pasarelas.
"""

from app.adapters.base import (
    CheckoutOptions,
    CheckoutSession,
    PaymentMethod,
    PaymentProvider,
    Subscription,
    WebhookEvent,
    WebhookResult,
)
from app.adapters.stripe_adapter import StripeAdapter
from app.adapters.transbank_adapter import TransbankAdapter
from app.adapters.mercadopago_adapter import MercadoPagoAdapter
from app.adapters.flow_adapter import FlowAdapter
from app.adapters.factory import build_providers

__all__ = [
    "CheckoutOptions",
    "CheckoutSession",
    "PaymentMethod",
    "PaymentProvider",
    "Subscription",
    "WebhookEvent",
    "WebhookResult",
    "StripeAdapter",
    "TransbankAdapter",
    "MercadoPagoAdapter",
    "FlowAdapter",
    "build_providers",
]
