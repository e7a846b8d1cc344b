"""
Servicios de negocio del servicio de facturación.
"""

from app.services.payment_service import PaymentService
from app.services.billing_service import BillingService
from app.services.webhook_service import WebhookDispatcher

__all__ = [
    "PaymentService",
    "BillingService",
    "WebhookDispatcher",
]
