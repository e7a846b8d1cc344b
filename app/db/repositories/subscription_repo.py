"""
Repositorio para la suscripción de cada tenant.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.base import SubscriptionUpdate
from app.db.database import set_tenant_context
from app.db.models import TenantSubscription
from app.db.upsert import dialect_insert, non_null
from app.schemas.billing import SubscriptionStatus
from app.schemas.plan import PlanId


logger = structlog.get_logger(__name__)

PROVIDER_OWNED_COLUMNS = ("provider_subscription_id", "provider_customer_id")


def as_tenant_uuid(tenant_id: Any) -> uuid.UUID:
    """Convierte un tenant id a UUID; lanza ValueError si no es válido."""
    if isinstance(tenant_id, uuid.UUID):
        return tenant_id
    return uuid.UUID(str(tenant_id))


class SubscriptionRepository:
    """Una fila por tenant; se actualiza en el lugar y nunca se borra."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_tenant(self, tenant_id: Any) -> TenantSubscription | None:
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            select(TenantSubscription).where(TenantSubscription.tenant_id == tenant)
        )
        return result.scalar_one_or_none()

    async def upsert(self, change: SubscriptionUpdate) -> TenantSubscription:
        """
        Inserta o actualiza la suscripción del tenant de forma atómica.

        En conflicto solo se sobrescriben los campos presentes en el cambio.
        """
        tenant = as_tenant_uuid(change.tenant_id)
        await set_tenant_context(self.db, tenant)

        changes = non_null({
            "provider": change.provider.value,
            "status": change.status.value,
            "plan_id": change.plan_id.value if change.plan_id else None,
            "provider_subscription_id": change.provider_subscription_id,
            "provider_customer_id": change.provider_customer_id,
            "current_period_start": change.current_period_start,
            "current_period_end": change.current_period_end,
            "cancel_at_period_end": change.cancel_at_period_end,
            "canceled_at": change.canceled_at,
            "subscription_metadata": change.metadata or None,
        })

        insert_values = {
            "id": uuid.uuid4(),
            "tenant_id": tenant,
            "plan_id": PlanId.FREE.value,
            "cancel_at_period_end": False,
            "subscription_metadata": {},
            **changes,
        }

        stmt = dialect_insert(self.db, TenantSubscription).values(**insert_values)

        # Los ids de la pasarela anterior no sobreviven a un cambio de pasarela
        provider_switched = TenantSubscription.provider != stmt.excluded.provider
        provider_ids = {
            column: case(
                (provider_switched, getattr(stmt.excluded, column)),
                else_=func.coalesce(
                    getattr(stmt.excluded, column),
                    getattr(TenantSubscription, column),
                ),
            )
            for column in PROVIDER_OWNED_COLUMNS
        }

        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id"],
            set_={**changes, **provider_ids, "updated_at": func.now()},
        ).returning(TenantSubscription)

        result = await self.db.execute(
            stmt,
            execution_options={"populate_existing": True},
        )
        subscription = result.scalar_one()

        logger.info(
            "Subscription upserted",
            tenant_id=str(tenant),
            provider=change.provider.value,
            status=change.status.value,
            plan_id=subscription.plan_id,
        )
        return subscription

    async def mark_canceled(
        self,
        tenant_id: Any,
        canceled_at: datetime | None = None,
    ) -> TenantSubscription | None:
        """Cambia el estado a canceled en el lugar."""
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)

        await self.db.execute(
            update(TenantSubscription)
            .where(TenantSubscription.tenant_id == tenant)
            .values(
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=canceled_at or datetime.now(timezone.utc),
                updated_at=func.now(),
            )
        )
        await self.db.flush()

        logger.info("Subscription canceled", tenant_id=str(tenant))
        return await self.get_by_tenant(tenant)
