"""
Repositorios para operaciones de base de datos.
"""

from app.db.repositories.subscription_repo import SubscriptionRepository, as_tenant_uuid
from app.db.repositories.payment_method_repo import PaymentMethodRepository
from app.db.repositories.payment_repo import InvoiceRepository, PaymentRepository
from app.db.repositories.webhook_event_repo import WebhookEventRepository

__all__ = [
    "SubscriptionRepository",
    "PaymentMethodRepository",
    "PaymentRepository",
    "InvoiceRepository",
    "WebhookEventRepository",
    "as_tenant_uuid",
]
