"""
Repositorio para medios de pago guardados.
"""

import uuid
from typing import Any, Sequence

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import set_tenant_context
from app.db.models import StoredPaymentMethod
from app.db.repositories.subscription_repo import as_tenant_uuid
from app.db.upsert import dialect_insert
from app.schemas.billing import PaymentMethodType, ProviderName


logger = structlog.get_logger(__name__)


class PaymentMethodRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_by_tenant(self, tenant_id: Any) -> Sequence[StoredPaymentMethod]:
        """Lista los medios del tenant; el default primero."""
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            select(StoredPaymentMethod)
            .where(StoredPaymentMethod.tenant_id == tenant)
            .order_by(
                StoredPaymentMethod.is_default.desc(),
                StoredPaymentMethod.created_at.desc(),
            )
        )
        return result.scalars().all()

    async def get_for_tenant(
        self,
        payment_method_id: Any,
        tenant_id: Any,
        method_type: PaymentMethodType | None = None,
    ) -> StoredPaymentMethod | None:
        """Obtiene un medio de pago solo si pertenece al tenant."""
        tenant = as_tenant_uuid(tenant_id)
        try:
            method_id = uuid.UUID(str(payment_method_id))
        except ValueError:
            return None

        await set_tenant_context(self.db, tenant)
        query = select(StoredPaymentMethod).where(
            StoredPaymentMethod.id == method_id,
            StoredPaymentMethod.tenant_id == tenant,
        )
        if method_type is not None:
            query = query.where(StoredPaymentMethod.type == method_type.value)

        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def count_by_tenant(self, tenant_id: Any) -> int:
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            select(func.count())
            .select_from(StoredPaymentMethod)
            .where(StoredPaymentMethod.tenant_id == tenant)
        )
        return result.scalar_one()

    async def upsert(
        self,
        tenant_id: Any,
        provider: ProviderName,
        provider_method_id: str,
        method_type: PaymentMethodType,
        last4: str | None = None,
        brand: str | None = None,
        is_default: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> StoredPaymentMethod:
        """
        Guarda un medio de pago identificado por (provider, provider_method_id).

        Si se marca como default, los demás medios del tenant dejan de serlo.
        """
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)

        if is_default:
            await self.db.execute(
                update(StoredPaymentMethod)
                .where(StoredPaymentMethod.tenant_id == tenant)
                .values(is_default=False)
            )

        values = {
            "type": method_type.value,
            "last4": last4,
            "brand": brand,
            "is_default": is_default,
            "method_metadata": metadata or {},
        }
        stmt = dialect_insert(self.db, StoredPaymentMethod).values(
            id=uuid.uuid4(),
            tenant_id=tenant,
            provider=provider.value,
            provider_method_id=provider_method_id,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "provider_method_id"],
            set_={**values, "updated_at": func.now()},
        ).returning(StoredPaymentMethod)

        result = await self.db.execute(
            stmt,
            execution_options={"populate_existing": True},
        )
        method = result.scalar_one()

        logger.info(
            "Payment method stored",
            tenant_id=str(tenant),
            provider=provider.value,
            payment_method_id=str(method.id),
            is_default=is_default,
        )
        return method

    async def delete(self, payment_method_id: Any, tenant_id: Any) -> bool:
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            delete(StoredPaymentMethod).where(
                StoredPaymentMethod.id == uuid.UUID(str(payment_method_id)),
                StoredPaymentMethod.tenant_id == tenant,
            )
        )
        deleted = bool(result.rowcount)
        if deleted:
            logger.info(
                "Payment method deleted",
                tenant_id=str(tenant),
                payment_method_id=str(payment_method_id),
            )
        return deleted
