"""
Dependencies compartidas por los routers.
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.db.database import get_db
from app.services import BillingService, PaymentService, WebhookDispatcher


@dataclass
class TenantIdentity:
    """Identidad del llamador, propagada por la capa de autenticación."""

    tenant_id: str
    user_id: str | None = None
    email: str | None = None


async def get_tenant(
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-ID")] = None,
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
    x_user_email: Annotated[str | None, Header(alias="X-User-Email")] = None,
) -> TenantIdentity:
    """Lee el tenant de los headers y lo agrega al contexto de logging."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-ID header",
        )
    try:
        tenant_id = str(uuid.UUID(x_tenant_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID header",
        )

    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    return TenantIdentity(tenant_id=tenant_id, user_id=x_user_id, email=x_user_email)


def get_payment_service(request: Request) -> PaymentService:
    """Registro de pasarelas construido en el lifespan."""
    return request.app.state.payments


async def get_billing_service(
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
    settings: Settings = Depends(get_settings),
) -> BillingService:
    return BillingService(db, payments, app_url=settings.APP_URL)


async def get_webhook_dispatcher(
    db: AsyncSession = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
) -> WebhookDispatcher:
    return WebhookDispatcher(db, payments)
