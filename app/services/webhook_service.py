"""
Servicio para webhooks entrantes de las pasarelas de pago.

Flujo por notificación:
  1. Verifica la firma (401 si es inválida)
  2. Clasifica el evento y deriva la clave de deduplicación
  3. Reclama la clave en processed_webhook_events
  4. Despacha al handler del adapter
  5. Aplica los cambios de estado con upserts
  6. Marca el evento como done (o failed para permitir la re-entrega)
"""

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.base import (
    InvoiceUpdate,
    PaymentUpdate,
    StateUpdate,
    SubscriptionUpdate,
    WebhookResult,
)
from app.db.repositories import (
    InvoiceRepository,
    PaymentRepository,
    SubscriptionRepository,
    WebhookEventRepository,
    as_tenant_uuid,
)
from app.schemas.billing import ProviderName
from app.services.payment_service import PaymentService
from app.utils.exceptions import WebhookVerificationError


logger = structlog.get_logger(__name__)


class WebhookDispatcher:
    """
    Procesa webhooks de cualquier pasarela configurada.

    Es idempotente: una re-entrega de un evento ya procesado se reconoce
    sin efectos secundarios.
    """

    def __init__(self, db: AsyncSession, payments: PaymentService):
        self.db = db
        self.payments = payments
        self.events = WebhookEventRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.invoices = InvoiceRepository(db)

    async def dispatch(
        self,
        provider_name: ProviderName | str,
        raw_body: bytes,
        data: dict[str, Any],
        signature: str | None = None,
        event_type: str | None = None,
    ) -> WebhookResult:
        """
        Procesa una notificación.

        Args:
            provider_name: Pasarela que envía la notificación
            raw_body: Cuerpo crudo, usado para verificar la firma
            data: Cuerpo ya parseado (JSON o form)
            signature: Header de firma de la pasarela
            event_type: Tipo explícito (ej: topic de MercadoPago)

        Returns:
            WebhookResult; success=False debe responderse con un 5xx

        Raises:
            NotConfiguredError: Si la pasarela no está configurada
            WebhookVerificationError: Si la firma es inválida
        """
        provider = self.payments.get_provider(provider_name)
        name = provider.provider_name.value

        if not provider.verify_webhook_signature(raw_body, signature or ""):
            logger.warning("Webhook signature rejected", provider=name)
            raise WebhookVerificationError(name)

        event = provider.parse_webhook_event(data, event_type)
        dedup_key = event.provider_event_id

        log = logger.bind(provider=name, event_type=event.event_type, dedup_key=dedup_key)
        log.info("Webhook received")

        if dedup_key:
            claimed = await self.events.claim(name, dedup_key, event.event_type)
            await self.db.commit()
            if not claimed:
                return WebhookResult(success=True, processed=True, duplicate=True)
        else:
            log.warning("Webhook without deduplication key")

        result = await provider.handle_webhook(event)
        if not result.success:
            await self._fail(name, dedup_key, result.error or "handler failed")
            return result

        try:
            for change in result.updates:
                await self._apply(change)

            if dedup_key:
                await self.events.mark_done(name, dedup_key)
            await self.db.commit()

        except Exception as e:
            log.error(
                "Failed to apply webhook updates",
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.db.rollback()
            await self._fail(name, dedup_key, str(e) or type(e).__name__)
            return WebhookResult.failed(str(e) or type(e).__name__)

        log.info("Webhook processed", updates=len(result.updates))
        return result

    async def _fail(self, provider: str, dedup_key: str | None, error: str) -> None:
        if dedup_key:
            await self.events.mark_failed(provider, dedup_key, error)
            await self.db.commit()

    async def _apply(self, change: StateUpdate) -> None:
        """Aplica un cambio de estado como upsert."""
        try:
            as_tenant_uuid(change.tenant_id)
        except ValueError:
            logger.warning(
                "Skipping update with invalid tenant id",
                provider=change.provider.value,
                update_type=type(change).__name__,
            )
            return

        if isinstance(change, SubscriptionUpdate):
            await self.subscriptions.upsert(change)
        elif isinstance(change, PaymentUpdate):
            await self.payment_repo.upsert(change)
        elif isinstance(change, InvoiceUpdate):
            await self.invoices.upsert(change)
        else:
            raise TypeError(f"Unknown state update: {type(change).__name__}")
