"""
Tests para repositorios y la compuerta de deduplicación de webhooks.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.base import InvoiceUpdate, PaymentUpdate, SubscriptionUpdate
from app.db.database import set_tenant_context
from app.db.models import ProcessedWebhookEvent
from app.db.repositories import (
    InvoiceRepository,
    PaymentMethodRepository,
    PaymentRepository,
    SubscriptionRepository,
    WebhookEventRepository,
    as_tenant_uuid,
)
from app.db.repositories.webhook_event_repo import (
    MAX_ERROR_LENGTH,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PROCESSING,
)
from app.schemas.billing import (
    InvoiceStatus,
    PaymentMethodType,
    PaymentStatus,
    ProviderName,
    SubscriptionStatus,
)
from app.schemas.plan import PlanId
from app.services import BillingService, PaymentService


class TestTenantId:
    def test_as_tenant_uuid(self, tenant_id: str):
        assert str(as_tenant_uuid(tenant_id)) == tenant_id

    def test_invalid_tenant_raises(self):
        with pytest.raises(ValueError):
            as_tenant_uuid("acme")

    @pytest.mark.asyncio
    async def test_tenant_variable_is_set_on_postgres(self, tenant_id: str):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        session.execute = AsyncMock()

        await set_tenant_context(session, tenant_id)

        statement, params = session.execute.await_args.args
        assert "set_config('app.current_tenant'" in str(statement)
        assert params == {"tenant_id": tenant_id}

    @pytest.mark.asyncio
    async def test_tenant_variable_is_skipped_on_sqlite(self, tenant_id: str):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "sqlite"
        session.execute = AsyncMock()

        await set_tenant_context(session, tenant_id)

        session.execute.assert_not_awaited()


class TestSubscriptionRepository:
    @pytest.mark.asyncio
    async def test_upsert_creates_with_defaults(self, test_session: AsyncSession, tenant_id: str):
        repo = SubscriptionRepository(test_session)

        subscription = await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.TRANSBANK,
                status=SubscriptionStatus.INCOMPLETE,
            )
        )

        assert subscription.tenant_id == as_tenant_uuid(tenant_id)
        assert subscription.plan_id == PlanId.FREE.value
        assert subscription.cancel_at_period_end is False
        assert subscription.subscription_metadata == {}

    @pytest.mark.asyncio
    async def test_upsert_keeps_one_row_per_tenant(
        self, test_session: AsyncSession, tenant_id: str
    ):
        repo = SubscriptionRepository(test_session)
        first = await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.STRIPE,
                status=SubscriptionStatus.ACTIVE,
                plan_id=PlanId.PRO,
                provider_subscription_id="sub_1",
            )
        )

        second = await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.STRIPE,
                status=SubscriptionStatus.PAST_DUE,
            )
        )
        await test_session.commit()

        assert second.id == first.id
        assert second.status == SubscriptionStatus.PAST_DUE.value
        # Campos ausentes en el cambio no se pisan
        assert second.plan_id == PlanId.PRO.value
        assert second.provider_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_gateway_switch_clears_previous_ids(
        self, test_session: AsyncSession, tenant_id: str
    ):
        repo = SubscriptionRepository(test_session)
        await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.MERCADOPAGO,
                status=SubscriptionStatus.ACTIVE,
                plan_id=PlanId.PRO,
                provider_subscription_id="pre_old",
                provider_customer_id="42",
            )
        )

        switched = await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.FLOW,
                status=SubscriptionStatus.ACTIVE,
                plan_id=PlanId.BUSINESS,
            )
        )

        assert switched.provider == "flow"
        assert switched.provider_subscription_id is None
        assert switched.provider_customer_id is None
        assert switched.plan_id == PlanId.BUSINESS.value

    @pytest.mark.asyncio
    async def test_cancel_after_gateway_switch(
        self, test_session: AsyncSession, payments: PaymentService, tenant_id: str
    ):
        repo = SubscriptionRepository(test_session)
        await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.MERCADOPAGO,
                status=SubscriptionStatus.ACTIVE,
                plan_id=PlanId.PRO,
                provider_subscription_id="pre_old",
            )
        )
        await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.FLOW,
                status=SubscriptionStatus.ACTIVE,
                plan_id=PlanId.PRO,
            )
        )

        canceled = await BillingService(test_session, payments).cancel_subscription(tenant_id)

        assert canceled.status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_mark_canceled(self, test_session: AsyncSession, tenant_id: str):
        repo = SubscriptionRepository(test_session)
        await repo.upsert(
            SubscriptionUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.FLOW,
                status=SubscriptionStatus.ACTIVE,
                plan_id=PlanId.BUSINESS,
            )
        )

        canceled = await repo.mark_canceled(tenant_id)

        assert canceled.status == SubscriptionStatus.CANCELED.value
        assert canceled.canceled_at is not None
        assert canceled.plan_id == PlanId.BUSINESS.value

    @pytest.mark.asyncio
    async def test_get_by_tenant_missing(self, test_session: AsyncSession, tenant_id: str):
        assert await SubscriptionRepository(test_session).get_by_tenant(tenant_id) is None


class TestPaymentRepository:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, test_session: AsyncSession, tenant_id: str):
        repo = PaymentRepository(test_session)
        change = PaymentUpdate(
            tenant_id=tenant_id,
            provider=ProviderName.MERCADOPAGO,
            provider_payment_id="999",
            status=PaymentStatus.PENDING,
            amount=29000,
            metadata={"planId": "PRO"},
        )

        first = await repo.upsert(change)
        change.status = PaymentStatus.SUCCEEDED
        second = await repo.upsert(change)
        await test_session.commit()

        payments = await repo.list_by_tenant(tenant_id)
        assert len(payments) == 1
        assert second.id == first.id
        assert payments[0].status == PaymentStatus.SUCCEEDED.value
        assert payments[0].payment_metadata == {"planId": "PRO"}

    @pytest.mark.asyncio
    async def test_get_by_provider_id_is_tenant_scoped(
        self, test_session: AsyncSession, tenant_id: str
    ):
        repo = PaymentRepository(test_session)
        await repo.upsert(
            PaymentUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.TRANSBANK,
                provider_payment_id="O1",
                status=PaymentStatus.SUCCEEDED,
                amount=29000,
            )
        )

        assert await repo.get_by_provider_id(tenant_id, ProviderName.TRANSBANK, "O1") is not None
        assert await repo.get_by_provider_id(str(uuid4()), ProviderName.TRANSBANK, "O1") is None
        assert await repo.get_by_provider_id(tenant_id, ProviderName.FLOW, "O1") is None

    @pytest.mark.asyncio
    async def test_invoice_upsert_is_idempotent(self, test_session: AsyncSession, tenant_id: str):
        repo = InvoiceRepository(test_session)
        change = InvoiceUpdate(
            tenant_id=tenant_id,
            provider=ProviderName.STRIPE,
            provider_invoice_id="in_1",
            status=InvoiceStatus.OPEN,
            subtotal=29000,
            tax=0,
            total=29000,
            currency="CLP",
        )

        await repo.upsert(change)
        change.status = InvoiceStatus.PAID
        change.paid_at = datetime.now(timezone.utc)
        await repo.upsert(change)

        [invoice] = await repo.list_by_tenant(tenant_id)
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.paid_at is not None


class TestPaymentMethodRepository:
    async def _store(self, repo: PaymentMethodRepository, tenant_id: str, method_id: str, **kwargs):
        return await repo.upsert(
            tenant_id=tenant_id,
            provider=ProviderName.TRANSBANK,
            provider_method_id=method_id,
            method_type=PaymentMethodType.ONECLICK,
            last4="6623",
            brand="Visa",
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_single_default_listed_first(self, test_session: AsyncSession, tenant_id: str):
        repo = PaymentMethodRepository(test_session)
        first = await self._store(repo, tenant_id, "tbk_1", is_default=True)
        await self._store(repo, tenant_id, "tbk_2")
        third = await self._store(repo, tenant_id, "tbk_3", is_default=True)

        methods = await repo.list_by_tenant(tenant_id)

        assert len(methods) == 3
        assert methods[0].id == third.id
        assert [m.is_default for m in methods].count(True) == 1
        assert first.id in {m.id for m in methods[1:]}

    @pytest.mark.asyncio
    async def test_get_for_tenant_filters_owner_and_type(
        self, test_session: AsyncSession, tenant_id: str
    ):
        repo = PaymentMethodRepository(test_session)
        method = await self._store(repo, tenant_id, "tbk_1")

        assert await repo.get_for_tenant(method.id, tenant_id) is not None
        assert await repo.get_for_tenant(
            method.id, tenant_id, method_type=PaymentMethodType.ONECLICK
        ) is not None
        assert await repo.get_for_tenant(
            method.id, tenant_id, method_type=PaymentMethodType.CARD
        ) is None
        assert await repo.get_for_tenant(method.id, str(uuid4())) is None
        assert await repo.get_for_tenant("not-a-uuid", tenant_id) is None

    @pytest.mark.asyncio
    async def test_count_and_delete(self, test_session: AsyncSession, tenant_id: str):
        repo = PaymentMethodRepository(test_session)
        method = await self._store(repo, tenant_id, "tbk_1")

        assert await repo.count_by_tenant(tenant_id) == 1
        assert await repo.delete(method.id, str(uuid4())) is False
        assert await repo.delete(method.id, tenant_id) is True
        assert await repo.count_by_tenant(tenant_id) == 0


class TestWebhookEventRepository:
    async def _event(self, db: AsyncSession, dedup_key: str) -> ProcessedWebhookEvent:
        result = await db.execute(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.dedup_key == dedup_key)
        )
        event = result.scalar_one()
        await db.refresh(event)
        return event

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, test_session: AsyncSession):
        repo = WebhookEventRepository(test_session)

        assert await repo.claim("stripe", "evt_1", "invoice.paid") is True
        assert await repo.claim("stripe", "evt_1", "invoice.paid") is False

        event = await self._event(test_session, "evt_1")
        assert event.status == STATUS_PROCESSING
        assert event.attempts == 1

    @pytest.mark.asyncio
    async def test_keys_are_scoped_by_provider(self, test_session: AsyncSession):
        repo = WebhookEventRepository(test_session)

        assert await repo.claim("stripe", "123", "payment") is True
        assert await repo.claim("mercadopago", "123", "payment") is True

    @pytest.mark.asyncio
    async def test_done_is_never_reclaimed(self, test_session: AsyncSession):
        repo = WebhookEventRepository(test_session, stale_after=timedelta(0))
        await repo.claim("stripe", "evt_1", "invoice.paid")
        await repo.mark_done("stripe", "evt_1")

        assert await repo.claim("stripe", "evt_1", "invoice.paid") is False

        event = await self._event(test_session, "evt_1")
        assert event.status == STATUS_DONE
        assert event.processed_at is not None

    @pytest.mark.asyncio
    async def test_failed_is_reclaimed(self, test_session: AsyncSession):
        repo = WebhookEventRepository(test_session)
        await repo.claim("flow", "payment.updated:tok", "payment.updated")
        await repo.mark_failed("flow", "payment.updated:tok", "x" * (MAX_ERROR_LENGTH + 50))

        event = await self._event(test_session, "payment.updated:tok")
        assert event.status == STATUS_FAILED
        assert len(event.error_message) == MAX_ERROR_LENGTH

        assert await repo.claim("flow", "payment.updated:tok", "payment.updated") is True

        event = await self._event(test_session, "payment.updated:tok")
        assert event.status == STATUS_PROCESSING
        assert event.attempts == 2
        assert event.error_message is None

    @pytest.mark.asyncio
    async def test_stale_processing_is_reclaimed(self, test_session: AsyncSession):
        test_session.add(
            ProcessedWebhookEvent(
                provider="transbank",
                dedup_key="transaction.completed:tok",
                event_type="transaction.completed",
                status=STATUS_PROCESSING,
                attempts=1,
                last_seen_at=datetime.now(timezone.utc) - timedelta(minutes=30),
            )
        )
        await test_session.flush()
        repo = WebhookEventRepository(test_session)

        assert await repo.claim("transbank", "transaction.completed:tok", "transaction.completed") is True
        assert await repo.claim("transbank", "transaction.completed:tok", "transaction.completed") is False
