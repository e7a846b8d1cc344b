"""
Capa de base de datos del servicio de facturación.
"""

from app.db.database import (
    close_db,
    get_db,
    get_engine,
    get_session_factory,
    init_db,
    set_tenant_context,
)
from app.db.models import (
    Base,
    Invoice,
    Payment,
    ProcessedWebhookEvent,
    StoredPaymentMethod,
    TenantSubscription,
)

__all__ = [
    # Database
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
    "set_tenant_context",
    # Models
    "Base",
    "TenantSubscription",
    "StoredPaymentMethod",
    "Payment",
    "Invoice",
    "ProcessedWebhookEvent",
]
