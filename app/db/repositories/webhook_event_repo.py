"""
Compuerta de deduplicación para webhooks entrantes.

El claim es atómico en dos pasos:
  1. INSERT ... ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
     -> fila retornada: primer procesador, continuar.
  2. Si hubo conflicto: UPDATE ... WHERE status='failed' (o 'processing' vencido)
     -> fila actualizada: se re-procesa un intento previo fallido.
     -> nada: 'done' o procesamiento en curso, es un duplicado.
"""

import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import ProcessedWebhookEvent
from app.db.upsert import dialect_insert


logger = structlog.get_logger(__name__)

STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"

# Un 'processing' más antiguo que esto se considera abandonado
STALE_PROCESSING_AFTER = timedelta(minutes=10)

MAX_ERROR_LENGTH = 1000


class WebhookEventRepository:
    """Registro de eventos procesados por (provider, dedup_key)."""

    def __init__(
        self,
        db: AsyncSession,
        stale_after: timedelta = STALE_PROCESSING_AFTER,
    ):
        self.db = db
        self.stale_after = stale_after

    async def claim(self, provider: str, dedup_key: str, event_type: str) -> bool:
        """
        Intenta reclamar el derecho a procesar el evento.

        Returns:
            True si este request debe procesarlo, False si es un duplicado.
        """
        now = datetime.now(timezone.utc)

        stmt = (
            dialect_insert(self.db, ProcessedWebhookEvent)
            .values(
                id=uuid.uuid4(),
                provider=provider,
                dedup_key=dedup_key,
                event_type=event_type,
                status=STATUS_PROCESSING,
                attempts=1,
                last_seen_at=now,
            )
            .on_conflict_do_nothing(index_elements=["provider", "dedup_key"])
            .returning(ProcessedWebhookEvent.id)
        )
        inserted = (await self.db.execute(stmt)).scalar_one_or_none()
        if inserted is not None:
            logger.debug("Webhook event claimed", provider=provider, dedup_key=dedup_key)
            return True

        reclaim = (
            update(ProcessedWebhookEvent)
            .where(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.dedup_key == dedup_key,
                or_(
                    ProcessedWebhookEvent.status == STATUS_FAILED,
                    and_(
                        ProcessedWebhookEvent.status == STATUS_PROCESSING,
                        ProcessedWebhookEvent.last_seen_at < now - self.stale_after,
                    ),
                ),
            )
            .values(
                status=STATUS_PROCESSING,
                attempts=ProcessedWebhookEvent.attempts + 1,
                error_message=None,
                last_seen_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(reclaim)
        if result.rowcount:
            logger.info(
                "Webhook event reclaimed for reprocessing",
                provider=provider,
                dedup_key=dedup_key,
            )
            return True

        logger.info("Duplicate webhook event", provider=provider, dedup_key=dedup_key)
        return False

    async def mark_done(self, provider: str, dedup_key: str) -> None:
        now = datetime.now(timezone.utc)
        await self.db.execute(
            update(ProcessedWebhookEvent)
            .where(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.dedup_key == dedup_key,
            )
            .values(status=STATUS_DONE, processed_at=now, last_seen_at=now)
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, provider: str, dedup_key: str, error: str) -> None:
        """Marca el evento como fallido para que la próxima re-entrega lo procese."""
        await self.db.execute(
            update(ProcessedWebhookEvent)
            .where(
                ProcessedWebhookEvent.provider == provider,
                ProcessedWebhookEvent.dedup_key == dedup_key,
            )
            .values(
                status=STATUS_FAILED,
                error_message=error[:MAX_ERROR_LENGTH],
                last_seen_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        logger.warning(
            "Webhook event marked as failed",
            provider=provider,
            dedup_key=dedup_key,
            error=error,
        )
