"""
Adapter para Transbank (Webpay Plus y Oneclick Mall).

Usa la API REST de Transbank directamente con httpx. Webpay Plus cubre
pagos únicos; Oneclick Mall permite cobros recurrentes con tarjetas
inscritas.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import structlog

from app.adapters.base import (
    CheckoutOptions,
    CheckoutSession,
    PaymentMethod,
    PaymentProvider,
    PaymentUpdate,
    StateUpdate,
    Subscription,
    SubscriptionUpdate,
    WebhookEvent,
    WebhookHandler,
)
from app.adapters.http_client import GatewayHttpClient
from app.config import HttpOptions, TransbankConfig
from app.schemas.billing import PaymentStatus, ProviderName, SubscriptionStatus
from app.schemas.plan import PLAN_AMOUNTS_CLP, PlanId, get_chargeable_amount, next_period_end
from app.utils.correlation import build_compact_reference, new_buy_order, parse_reference
from app.utils.exceptions import ConfigurationError, UnsupportedOperationError


logger = structlog.get_logger(__name__)

HOSTS = {
    "TEST": "https://webpay3gint.transbank.cl",
    "LIVE": "https://webpay3g.transbank.cl",
}
WEBPAY_PATH = "/rswebpaytransaction/api/webpay/v1.2/transactions"
ONECLICK_PATH = "/rswebpaytransaction/api/oneclick/v1.2"

EVENT_COMPLETED = "transaction.completed"
EVENT_FAILED = "transaction.failed"


@dataclass
class TransbankTransaction:
    """Resultado de commit o status de Webpay Plus."""

    status: str | None
    amount: int
    buy_order: str
    session_id: str | None = None
    response_code: int | None = None
    authorization_code: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == "AUTHORIZED" and self.response_code == 0

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TransbankTransaction":
        return cls(
            status=data.get("status"),
            amount=int(data.get("amount") or 0),
            buy_order=data.get("buy_order", ""),
            session_id=data.get("session_id"),
            response_code=data.get("response_code"),
            authorization_code=data.get("authorization_code"),
            raw=data,
        )


@dataclass
class OneclickInscription:
    token: str
    url_webpay: str


@dataclass
class OneclickInscriptionResult:
    response_code: int | None
    tbk_user: str | None
    authorization_code: str | None
    card_type: str | None
    card_number: str | None

    @property
    def success(self) -> bool:
        return self.response_code == 0

    @property
    def last4(self) -> str | None:
        return self.card_number[-4:] if self.card_number else None


@dataclass
class OneclickAuthorization:
    success: bool
    buy_order: str
    child_buy_order: str
    amount: int
    authorization_code: str | None = None
    response_code: int | None = None
    status: str | None = None


@dataclass
class OneclickTransactionStatus:
    buy_order: str
    status: str | None
    amount: int | None = None
    authorization_code: str | None = None


class TransbankAdapter(PaymentProvider):
    """
    Adapter para Transbank.

    Webpay Plus no tiene suscripciones ni portal: el cobro recurrente se
    hace con Oneclick desde el servicio de facturación.
    """

    def __init__(
        self,
        config: TransbankConfig,
        http_options: HttpOptions | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        base_url = HOSTS["LIVE" if config.environment == "LIVE" else "TEST"]

        self._webpay = GatewayHttpClient(
            ProviderName.TRANSBANK,
            base_url,
            headers=self._auth_headers(config.commerce_code, config.api_key),
            options=http_options,
            transport=transport,
        )

        self._oneclick: GatewayHttpClient | None = None
        if config.oneclick is not None:
            self._oneclick = GatewayHttpClient(
                ProviderName.TRANSBANK,
                base_url,
                headers=self._auth_headers(
                    config.oneclick.commerce_code,
                    config.oneclick.api_key,
                ),
                options=http_options,
                transport=transport,
            )

        logger.info(
            "TransbankAdapter initialized",
            environment=config.environment,
            oneclick_enabled=self._oneclick is not None,
        )

    @staticmethod
    def _auth_headers(commerce_code: str, api_key: str) -> dict[str, str]:
        return {
            "Tbk-Api-Key-Id": commerce_code,
            "Tbk-Api-Key-Secret": api_key,
            "Content-Type": "application/json",
        }

    @property
    def provider_name(self) -> ProviderName:
        return ProviderName.TRANSBANK

    @property
    def oneclick_enabled(self) -> bool:
        return self._oneclick is not None

    async def create_checkout_session(
        self,
        plan_id: PlanId,
        tenant_id: str,
        options: CheckoutOptions,
    ) -> CheckoutSession:
        """
        Crea una transacción Webpay Plus.

        El session_id lleva la referencia compacta tenant/plan; el buy_order
        es un identificador corto y único.
        """
        amount = get_chargeable_amount(plan_id)
        buy_order = new_buy_order()
        session_id = build_compact_reference(tenant_id, plan_id)

        response = await self._webpay.request(
            "POST",
            WEBPAY_PATH,
            "create transaction",
            json={
                "buy_order": buy_order,
                "session_id": session_id,
                "amount": amount,
                "return_url": options.success_url,
            },
        )

        token = response["token"]
        logger.info(
            "Transbank transaction created",
            buy_order=buy_order,
            tenant_id=tenant_id,
            plan_id=plan_id.value,
            amount=amount,
        )

        return CheckoutSession(
            session_id=token,
            checkout_url=f"{response['url']}?token_ws={token}",
            plan_id=plan_id,
            provider=self.provider_name,
        )

    async def get_subscription(self, provider_subscription_id: str) -> Subscription | None:
        # Webpay Plus no tiene suscripciones
        return None

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        raise UnsupportedOperationError(self.provider_name.value, "cancel_subscription")

    async def list_payment_methods(self, tenant_id: str) -> list[PaymentMethod]:
        # Las tarjetas Oneclick se guardan localmente
        return []

    def verify_webhook_signature(self, raw_payload: bytes | str, signature: str) -> bool:
        # Transbank no firma el retorno; la confianza viene del commit servidor a servidor
        return True

    async def get_portal_url(self, tenant_id: str) -> str:
        return ""

    def parse_webhook_event(
        self,
        data: dict[str, Any],
        event_type: str | None = None,
    ) -> WebhookEvent:
        """
        Clasifica el POST de retorno de Webpay.

        token_ws solo: pago terminado, hay que hacer commit.
        TBK_TOKEN (o solo TBK_ORDEN_COMPRA): el usuario abortó o expiró.
        """
        if event_type is None:
            if data.get("TBK_TOKEN") or (
                data.get("TBK_ORDEN_COMPRA") and not data.get("token_ws")
            ):
                event_type = EVENT_FAILED
            elif data.get("token_ws"):
                event_type = EVENT_COMPLETED
            else:
                event_type = data.get("status") or "transaction.updated"

        token = (
            data.get("token_ws")
            or data.get("TBK_TOKEN")
            or data.get("TBK_ORDEN_COMPRA")
            or data.get("token")
        )

        return WebhookEvent(
            provider=self.provider_name,
            event_type=event_type,
            data=data,
            provider_event_id=f"{event_type}:{token}" if token else None,
        )

    @property
    def webhook_handlers(self) -> Mapping[str, WebhookHandler]:
        return {
            EVENT_COMPLETED: self._handle_transaction_completed,
            EVENT_FAILED: self._handle_transaction_failed,
        }

    async def _handle_transaction_completed(self, data: dict[str, Any]) -> list[StateUpdate]:
        token = data.get("token_ws") or data.get("token")
        if not token:
            raise ValueError("Missing token_ws in Transbank notification")

        transaction = await self.confirm_transaction(token)
        correlation = parse_reference(transaction.session_id, compact=True)
        if correlation is None:
            logger.warning(
                "Unrecognized Transbank session_id",
                buy_order=transaction.buy_order,
            )
            return []

        now = datetime.now(timezone.utc)
        payment = PaymentUpdate(
            tenant_id=correlation.tenant_id,
            provider=self.provider_name,
            provider_payment_id=transaction.buy_order,
            status=PaymentStatus.SUCCEEDED if transaction.success else PaymentStatus.FAILED,
            amount=transaction.amount,
            processed_at=now,
            metadata={
                "token": token,
                "planId": correlation.plan_id.value,
                "authorizationCode": transaction.authorization_code,
                "responseCode": transaction.response_code,
            },
        )
        if not transaction.success:
            logger.info(
                "Transbank transaction rejected",
                buy_order=transaction.buy_order,
                status=transaction.status,
                response_code=transaction.response_code,
            )
            return [payment]

        return [
            payment,
            SubscriptionUpdate(
                tenant_id=correlation.tenant_id,
                provider=self.provider_name,
                status=SubscriptionStatus.ACTIVE,
                plan_id=correlation.plan_id,
                current_period_start=now,
                current_period_end=next_period_end(now, correlation.plan_id),
                cancel_at_period_end=False,
            ),
        ]

    async def _handle_transaction_failed(self, data: dict[str, Any]) -> list[StateUpdate]:
        correlation = parse_reference(data.get("TBK_ID_SESION"), compact=True)
        buy_order = data.get("TBK_ORDEN_COMPRA")
        if correlation is None or not buy_order:
            logger.info("Transbank transaction aborted without correlation")
            return []

        return [
            PaymentUpdate(
                tenant_id=correlation.tenant_id,
                provider=self.provider_name,
                provider_payment_id=buy_order,
                status=PaymentStatus.FAILED,
                amount=PLAN_AMOUNTS_CLP.get(correlation.plan_id, 0),
                processed_at=datetime.now(timezone.utc),
                metadata={"token": data.get("TBK_TOKEN"), "reason": "aborted"},
            )
        ]

    # ============================================
    # Webpay Plus
    # ============================================

    async def confirm_transaction(self, token: str) -> TransbankTransaction:
        """Confirma (commit) una transacción cuando el usuario vuelve de Webpay."""
        response = await self._webpay.request(
            "PUT", f"{WEBPAY_PATH}/{token}", "commit transaction"
        )
        return TransbankTransaction.from_response(response or {})

    async def get_transaction_status(self, token: str) -> TransbankTransaction:
        response = await self._webpay.request(
            "GET", f"{WEBPAY_PATH}/{token}", "get transaction status"
        )
        return TransbankTransaction.from_response(response or {})

    async def refund_transaction(self, token: str, amount: int) -> dict[str, Any]:
        """Anula o reversa total/parcialmente una transacción Webpay Plus."""
        response = await self._webpay.request(
            "POST",
            f"{WEBPAY_PATH}/{token}/refunds",
            "refund transaction",
            json={"amount": amount},
        )
        logger.info("Transbank refund requested", amount=amount, type=(response or {}).get("type"))
        return response or {}

    # ============================================
    # Oneclick Mall
    # ============================================

    def _require_oneclick(self) -> GatewayHttpClient:
        if self._oneclick is None:
            raise ConfigurationError("Oneclick is not configured")
        return self._oneclick

    async def start_oneclick_inscription(
        self,
        username: str,
        email: str,
        response_url: str,
    ) -> OneclickInscription:
        """Inicia la inscripción de una tarjeta."""
        client = self._require_oneclick()
        response = await client.request(
            "POST",
            f"{ONECLICK_PATH}/inscriptions",
            "start oneclick inscription",
            json={"username": username, "email": email, "response_url": response_url},
        )
        return OneclickInscription(token=response["token"], url_webpay=response["url_webpay"])

    async def finish_oneclick_inscription(self, token: str) -> OneclickInscriptionResult:
        client = self._require_oneclick()
        response = await client.request(
            "PUT",
            f"{ONECLICK_PATH}/inscriptions/{token}",
            "finish oneclick inscription",
        ) or {}
        return OneclickInscriptionResult(
            response_code=response.get("response_code"),
            tbk_user=response.get("tbk_user"),
            authorization_code=response.get("authorization_code"),
            card_type=response.get("card_type"),
            card_number=response.get("card_number"),
        )

    async def delete_oneclick_inscription(self, tbk_user: str, username: str) -> None:
        client = self._require_oneclick()
        await client.request(
            "DELETE",
            f"{ONECLICK_PATH}/inscriptions",
            "delete oneclick inscription",
            json={"tbk_user": tbk_user, "username": username},
        )
        logger.info("Oneclick inscription deleted", username=username)

    async def authorize_oneclick_payment(
        self,
        username: str,
        tbk_user: str,
        buy_order: str,
        amount: int,
        commerce_code: str | None = None,
    ) -> OneclickAuthorization:
        """
        Cobra una tarjeta inscrita sin interacción del usuario.

        Args:
            commerce_code: Código de comercio hijo (por defecto el de Oneclick)

        Returns:
            OneclickAuthorization; success solo si el detalle tiene response_code 0
        """
        client = self._require_oneclick()
        child_commerce_code = commerce_code or self._config.oneclick.commerce_code
        child_buy_order = f"{buy_order}-child"

        response = await client.request(
            "POST",
            f"{ONECLICK_PATH}/transactions",
            "authorize oneclick payment",
            json={
                "username": username,
                "tbk_user": tbk_user,
                "buy_order": buy_order,
                "details": [
                    {
                        "commerce_code": child_commerce_code,
                        "buy_order": child_buy_order,
                        "amount": amount,
                        "installments_number": 1,
                    }
                ],
            },
        ) or {}

        details = response.get("details") or [{}]
        detail = details[0]
        return OneclickAuthorization(
            success=detail.get("response_code") == 0,
            buy_order=response.get("buy_order", buy_order),
            child_buy_order=detail.get("buy_order", child_buy_order),
            amount=int(detail.get("amount") or amount),
            authorization_code=detail.get("authorization_code"),
            response_code=detail.get("response_code"),
            status=detail.get("status"),
        )

    async def get_oneclick_transaction_status(self, buy_order: str) -> OneclickTransactionStatus:
        client = self._require_oneclick()
        response = await client.request(
            "GET",
            f"{ONECLICK_PATH}/transactions/{buy_order}",
            "get oneclick transaction status",
        ) or {}

        detail = (response.get("details") or [{}])[0]
        return OneclickTransactionStatus(
            buy_order=buy_order,
            status=detail.get("status") or response.get("status"),
            amount=detail.get("amount"),
            authorization_code=detail.get("authorization_code"),
        )

    async def refund_oneclick_transaction(
        self,
        buy_order: str,
        child_commerce_code: str,
        child_buy_order: str,
        amount: int,
    ) -> dict[str, Any]:
        client = self._require_oneclick()
        response = await client.request(
            "POST",
            f"{ONECLICK_PATH}/transactions/{buy_order}/refunds",
            "refund oneclick transaction",
            json={
                "commerce_code": child_commerce_code,
                "detail_buy_order": child_buy_order,
                "amount": amount,
            },
        )
        return response or {}

    async def aclose(self) -> None:
        await self._webpay.aclose()
        if self._oneclick is not None:
            await self._oneclick.aclose()
