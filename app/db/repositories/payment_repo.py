"""
Repositorio para pagos y facturas.
"""

import uuid
from typing import Any, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.base import InvoiceUpdate, PaymentUpdate
from app.db.database import set_tenant_context
from app.db.models import Invoice, Payment
from app.db.repositories.subscription_repo import as_tenant_uuid
from app.db.upsert import dialect_insert, non_null
from app.schemas.billing import ProviderName


logger = structlog.get_logger(__name__)


class PaymentRepository:
    """Repositorio para pagos, identificados por (provider, provider_payment_id)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(self, change: PaymentUpdate) -> Payment:
        """Inserta o actualiza un pago de forma atómica."""
        tenant = as_tenant_uuid(change.tenant_id)
        await set_tenant_context(self.db, tenant)

        changes = non_null({
            "status": change.status.value,
            "amount": change.amount,
            "currency": change.currency,
            "processed_at": change.processed_at,
            "payment_metadata": change.metadata or None,
        })

        stmt = dialect_insert(self.db, Payment).values(
            **{
                "id": uuid.uuid4(),
                "tenant_id": tenant,
                "provider": change.provider.value,
                "provider_payment_id": change.provider_payment_id,
                "payment_metadata": {},
                **changes,
            }
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "provider_payment_id"],
            set_={**changes, "updated_at": func.now()},
        ).returning(Payment)

        result = await self.db.execute(
            stmt,
            execution_options={"populate_existing": True},
        )
        payment = result.scalar_one()

        logger.info(
            "Payment upserted",
            tenant_id=str(tenant),
            provider=change.provider.value,
            provider_payment_id=change.provider_payment_id,
            status=change.status.value,
        )
        return payment

    async def get_by_provider_id(
        self,
        tenant_id: Any,
        provider: ProviderName,
        provider_payment_id: str,
    ) -> Payment | None:
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            select(Payment).where(
                Payment.tenant_id == tenant,
                Payment.provider == provider.value,
                Payment.provider_payment_id == provider_payment_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_by_tenant(
        self,
        tenant_id: Any,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[Payment]:
        """Lista pagos de un tenant, más recientes primero."""
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            select(Payment)
            .where(Payment.tenant_id == tenant)
            .order_by(Payment.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all()


class InvoiceRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(self, change: InvoiceUpdate) -> Invoice:
        tenant = as_tenant_uuid(change.tenant_id)
        await set_tenant_context(self.db, tenant)

        changes = non_null({
            "status": change.status.value,
            "subtotal": change.subtotal,
            "tax": change.tax,
            "total": change.total,
            "currency": change.currency,
            "paid_at": change.paid_at,
            "invoice_metadata": change.metadata or None,
        })

        stmt = dialect_insert(self.db, Invoice).values(
            **{
                "id": uuid.uuid4(),
                "tenant_id": tenant,
                "provider": change.provider.value,
                "provider_invoice_id": change.provider_invoice_id,
                "invoice_metadata": {},
                **changes,
            }
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "provider_invoice_id"],
            set_={**changes, "updated_at": func.now()},
        ).returning(Invoice)

        result = await self.db.execute(
            stmt,
            execution_options={"populate_existing": True},
        )
        invoice = result.scalar_one()

        logger.info(
            "Invoice upserted",
            tenant_id=str(tenant),
            provider_invoice_id=change.provider_invoice_id,
            status=change.status.value,
        )
        return invoice

    async def list_by_tenant(self, tenant_id: Any) -> Sequence[Invoice]:
        tenant = as_tenant_uuid(tenant_id)
        await set_tenant_context(self.db, tenant)
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.tenant_id == tenant)
            .order_by(Invoice.created_at.desc())
        )
        return result.scalars().all()
