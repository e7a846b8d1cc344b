"""
Modelos SQLAlchemy del servicio de facturación.

Toda fila de negocio lleva `tenant_id`; en PostgreSQL las políticas RLS
filtran por la variable de sesión `app.current_tenant`.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.schemas.billing import (
    InvoiceStatus,
    PaymentMethodType,
    PaymentStatus,
    SubscriptionStatus,
)
from app.schemas.plan import PlanId


# JSONB en PostgreSQL, JSON genérico en otros motores (tests con SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base para todos los modelos."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        uuid.UUID: Uuid,
    }


class TimestampMixin:
    """Mixin para campos de timestamp."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class TenantSubscription(Base, TimestampMixin):
    """Suscripción del tenant. Una fila por tenant; nunca se borra."""

    __tablename__ = "tenant_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(nullable=False, unique=True, index=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    plan_id: Mapped[str] = mapped_column(
        String(20),
        default=PlanId.FREE.value,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=SubscriptionStatus.INCOMPLETE.value,
        nullable=False,
        index=True,
    )
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    subscription_metadata: Mapped[dict[str, Any]] = mapped_column(
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TenantSubscription {self.tenant_id} {self.plan_id} ({self.status})>"


class StoredPaymentMethod(Base, TimestampMixin):
    """Medio de pago guardado (tarjetas Oneclick, referencias de Stripe)."""

    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint("provider", "provider_method_id", name="uq_payment_methods_provider_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_method_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(
        String(20),
        default=PaymentMethodType.CARD.value,
        nullable=False,
    )
    last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    brand: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Oneclick: tbkUser, username, authorizationCode
    method_metadata: Mapped[dict[str, Any]] = mapped_column(
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StoredPaymentMethod {self.provider} {self.type} ****{self.last4}>"


class Payment(Base, TimestampMixin):
    """Modelo para pagos/transacciones."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Monto entero en la unidad de la moneda (CLP no tiene decimales)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="CLP", nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment_metadata: Mapped[dict[str, Any]] = mapped_column(
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Payment {self.id} - {self.amount} {self.currency} ({self.status})>"


class Invoice(Base, TimestampMixin):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("provider", "provider_invoice_id", name="uq_invoices_provider_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=InvoiceStatus.DRAFT.value,
        nullable=False,
    )
    subtotal: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    tax: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="CLP", nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    invoice_metadata: Mapped[dict[str, Any]] = mapped_column(
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Invoice {self.provider_invoice_id} {self.total} {self.currency} ({self.status})>"


class ProcessedWebhookEvent(Base, TimestampMixin):
    """
    Compuerta de deduplicación de webhooks.

    Una fila por (provider, dedup_key); el estado processing/done/failed
    decide si una re-entrega se procesa o se descarta.
    """

    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_processed_webhook_events_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.provider}:{self.dedup_key} ({self.status})>"
