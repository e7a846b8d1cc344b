"""
Servicio de facturación por tenant.
Orquesta checkout, suscripción, medios de pago y Oneclick.
"""

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.base import CheckoutOptions, PaymentUpdate
from app.db.models import Payment, StoredPaymentMethod
from app.db.repositories import (
    PaymentMethodRepository,
    PaymentRepository,
    SubscriptionRepository,
    as_tenant_uuid,
)
from app.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    OneclickAuthorizeRequest,
    OneclickAuthorizeResponse,
    OneclickInscriptionFinishResponse,
    OneclickInscriptionStartResponse,
    OneclickTransactionStatusResponse,
    PaymentMethodResponse,
    PaymentMethodType,
    PaymentResponse,
    PaymentStatus,
    ProviderName,
    SubscriptionResponse,
)
from app.schemas.plan import PlanId
from app.services.payment_service import PaymentService
from app.utils.correlation import new_buy_order
from app.utils.exceptions import (
    OneclickRejectedError,
    PaymentNotFoundError,
    PaymentMethodNotFoundError,
    PlanNotPurchasableError,
    SubscriptionNotFoundError,
    UnsupportedOperationError,
)


logger = structlog.get_logger(__name__)


class BillingService:
    """
    Operaciones de facturación del tenant autenticado.

    Coordina entre los repositorios y las pasarelas del registro.
    """

    def __init__(
        self,
        db: AsyncSession,
        payments: PaymentService,
        app_url: str = "http://localhost:3000",
    ):
        self.db = db
        self.payments = payments
        self.app_url = app_url.rstrip("/")
        self.subscriptions = SubscriptionRepository(db)
        self.methods = PaymentMethodRepository(db)
        self.payment_repo = PaymentRepository(db)

    # ============================================
    # Checkout y suscripción
    # ============================================

    async def create_checkout(
        self,
        tenant_id: str,
        request: CheckoutRequest,
        email: str | None = None,
    ) -> CheckoutResponse:
        """
        Crea un checkout para contratar un plan.

        Raises:
            PlanNotPurchasableError: FREE o ENTERPRISE
            NotConfiguredError: Si la pasarela pedida no está configurada
            NoProviderConfiguredError: Si no hay ninguna pasarela
        """
        if request.plan_id == PlanId.ENTERPRISE:
            raise PlanNotPurchasableError(request.plan_id.value, "contact sales")
        if request.plan_id == PlanId.FREE:
            raise PlanNotPurchasableError(request.plan_id.value, "free plan requires no checkout")

        provider_name = request.provider or self.payments.get_preferred_provider(request.region)
        provider = self.payments.get_provider(provider_name)

        metadata = {"email": email} if email else {}
        options = CheckoutOptions(
            success_url=request.success_url or f"{self.app_url}/billing/success",
            cancel_url=request.cancel_url or f"{self.app_url}/billing/cancel",
            metadata=metadata,
        )

        session = await provider.create_checkout_session(request.plan_id, tenant_id, options)

        logger.info(
            "Checkout created",
            tenant_id=tenant_id,
            provider=session.provider.value,
            plan_id=session.plan_id.value,
        )
        return CheckoutResponse(
            session_id=session.session_id,
            checkout_url=session.checkout_url,
            plan_id=session.plan_id,
            provider=session.provider,
        )

    async def get_subscription(self, tenant_id: str) -> SubscriptionResponse:
        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(tenant_id)
        return SubscriptionResponse.model_validate(subscription)

    async def cancel_subscription(self, tenant_id: str) -> SubscriptionResponse:
        """
        Cancela la suscripción en la pasarela y la marca como canceled.

        Las pasarelas sin suscripciones nativas (Transbank, Flow) solo se
        cancelan localmente.
        """
        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            raise SubscriptionNotFoundError(tenant_id)

        if subscription.provider_subscription_id:
            provider = self.payments.get_provider(subscription.provider)
            await provider.cancel_subscription(subscription.provider_subscription_id)

        canceled = await self.subscriptions.mark_canceled(
            tenant_id,
            canceled_at=datetime.now(timezone.utc),
        )
        return SubscriptionResponse.model_validate(canceled)

    # ============================================
    # Medios de pago
    # ============================================

    @staticmethod
    def _method_response(method: StoredPaymentMethod) -> PaymentMethodResponse:
        return PaymentMethodResponse(
            id=str(method.id),
            provider=ProviderName(method.provider),
            type=PaymentMethodType(method.type),
            last4=method.last4,
            brand=method.brand,
            is_default=method.is_default,
            source="stored",
        )

    async def list_payment_methods(self, tenant_id: str) -> list[PaymentMethodResponse]:
        """Medios guardados (default primero) más los de la pasarela de la suscripción."""
        stored = [self._method_response(m) for m in await self.methods.list_by_tenant(tenant_id)]

        subscription = await self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None or not self.payments.is_provider_available(subscription.provider):
            return stored

        provider = self.payments.get_provider(subscription.provider)
        live = await provider.list_payment_methods(tenant_id)
        known = {m.id for m in stored}

        return stored + [
            PaymentMethodResponse(
                id=method.id,
                provider=method.provider,
                type=method.type,
                last4=method.last4,
                brand=method.brand,
                is_default=method.is_default,
                source="provider",
            )
            for method in live
            if method.id not in known
        ]

    async def delete_payment_method(self, tenant_id: str, payment_method_id: str) -> None:
        method = await self.methods.get_for_tenant(payment_method_id, tenant_id)
        if method is None:
            raise PaymentMethodNotFoundError(payment_method_id)
        await self.methods.delete(method.id, tenant_id)

    async def get_portal_url(self, tenant_id: str, provider_name: ProviderName) -> str:
        provider = self.payments.get_provider(provider_name)
        url = await provider.get_portal_url(tenant_id)
        if not url:
            raise UnsupportedOperationError(provider_name.value, "customer portal")
        return url

    # ============================================
    # Oneclick (Transbank)
    # ============================================

    @staticmethod
    def _oneclick_username(tenant_id: str) -> str:
        # Oneclick limita el username a 40 caracteres
        return as_tenant_uuid(tenant_id).hex

    async def start_oneclick_inscription(
        self,
        tenant_id: str,
        email: str,
        response_url: str | None = None,
    ) -> OneclickInscriptionStartResponse:
        transbank = self.payments.get_transbank()
        inscription = await transbank.start_oneclick_inscription(
            username=self._oneclick_username(tenant_id),
            email=email,
            response_url=response_url or f"{self.app_url}/billing/oneclick",
        )
        logger.info("Oneclick inscription started", tenant_id=tenant_id)
        return OneclickInscriptionStartResponse(
            token=inscription.token,
            url=inscription.url_webpay,
        )

    async def finish_oneclick_inscription(
        self,
        tenant_id: str,
        token: str,
    ) -> OneclickInscriptionFinishResponse:
        """
        Termina la inscripción y guarda la tarjeta.

        La primera tarjeta del tenant queda como default.
        """
        transbank = self.payments.get_transbank()
        result = await transbank.finish_oneclick_inscription(token)
        if not result.success or not result.tbk_user:
            raise OneclickRejectedError("inscription", result.response_code)

        is_first = await self.methods.count_by_tenant(tenant_id) == 0
        method = await self.methods.upsert(
            tenant_id=tenant_id,
            provider=ProviderName.TRANSBANK,
            provider_method_id=result.tbk_user,
            method_type=PaymentMethodType.ONECLICK,
            last4=result.last4,
            brand=result.card_type,
            is_default=is_first,
            metadata={
                "tbkUser": result.tbk_user,
                "username": self._oneclick_username(tenant_id),
                "authorizationCode": result.authorization_code,
            },
        )
        return OneclickInscriptionFinishResponse(payment_method=self._method_response(method))

    async def _get_oneclick_method(
        self,
        tenant_id: str,
        payment_method_id: Any,
    ) -> StoredPaymentMethod:
        method = await self.methods.get_for_tenant(
            payment_method_id,
            tenant_id,
            method_type=PaymentMethodType.ONECLICK,
        )
        if method is None:
            raise PaymentMethodNotFoundError(str(payment_method_id))
        return method

    async def delete_oneclick_inscription(self, tenant_id: str, payment_method_id: str) -> None:
        """Elimina la inscripción en Transbank y luego localmente."""
        method = await self._get_oneclick_method(tenant_id, payment_method_id)
        transbank = self.payments.get_transbank()
        await transbank.delete_oneclick_inscription(
            tbk_user=method.method_metadata.get("tbkUser", method.provider_method_id),
            username=method.method_metadata.get("username", self._oneclick_username(tenant_id)),
        )
        await self.methods.delete(method.id, tenant_id)

    async def authorize_oneclick_payment(
        self,
        tenant_id: str,
        request: OneclickAuthorizeRequest,
    ) -> OneclickAuthorizeResponse:
        """
        Cobra una tarjeta inscrita y registra el pago.

        Un rechazo también queda registrado como pago fallido.

        Raises:
            PaymentMethodNotFoundError: Si la tarjeta no es del tenant
            OneclickRejectedError: Si Transbank rechaza el cobro
        """
        method = await self._get_oneclick_method(tenant_id, request.payment_method_id)
        transbank = self.payments.get_transbank()

        buy_order = new_buy_order()
        authorization = await transbank.authorize_oneclick_payment(
            username=method.method_metadata.get("username", self._oneclick_username(tenant_id)),
            tbk_user=method.method_metadata.get("tbkUser", method.provider_method_id),
            buy_order=buy_order,
            amount=request.amount,
            commerce_code=request.commerce_code,
        )

        payment = await self.payment_repo.upsert(
            PaymentUpdate(
                tenant_id=tenant_id,
                provider=ProviderName.TRANSBANK,
                provider_payment_id=authorization.buy_order,
                status=PaymentStatus.SUCCEEDED if authorization.success else PaymentStatus.FAILED,
                amount=authorization.amount,
                processed_at=datetime.now(timezone.utc),
                metadata={
                    "childBuyOrder": authorization.child_buy_order,
                    "authorizationCode": authorization.authorization_code,
                    "responseCode": authorization.response_code,
                    "paymentMethodId": str(method.id),
                },
            )
        )

        if not authorization.success:
            # El pago fallido se conserva aunque el request termine en error
            await self.db.commit()
            raise OneclickRejectedError("authorization", authorization.response_code)

        logger.info(
            "Oneclick payment authorized",
            tenant_id=tenant_id,
            buy_order=authorization.buy_order,
            amount=authorization.amount,
        )
        return OneclickAuthorizeResponse(
            authorization_code=authorization.authorization_code,
            payment=self._payment_response(payment),
        )

    async def get_oneclick_transaction_status(
        self,
        tenant_id: str,
        buy_order: str,
    ) -> OneclickTransactionStatusResponse:
        """Estado de una transacción Oneclick propia del tenant."""
        payment = await self.payment_repo.get_by_provider_id(
            tenant_id,
            ProviderName.TRANSBANK,
            buy_order,
        )
        if payment is None:
            raise PaymentNotFoundError(buy_order)

        transbank = self.payments.get_transbank()
        status = await transbank.get_oneclick_transaction_status(buy_order)
        return OneclickTransactionStatusResponse(
            buy_order=status.buy_order,
            status=status.status,
            amount=status.amount,
            authorization_code=status.authorization_code,
        )

    @staticmethod
    def _payment_response(payment: Payment) -> PaymentResponse:
        return PaymentResponse(
            id=payment.id,
            provider=ProviderName(payment.provider),
            provider_payment_id=payment.provider_payment_id,
            status=PaymentStatus(payment.status),
            amount=payment.amount,
            currency=payment.currency,
            processed_at=payment.processed_at,
        )

    async def list_payments(self, tenant_id: str) -> list[PaymentResponse]:
        return [self._payment_response(p) for p in await self.payment_repo.list_by_tenant(tenant_id)]
