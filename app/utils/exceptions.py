"""
Excepciones personalizadas del servicio de facturación.

Cada excepción define el código HTTP con el que la capa REST la reporta.
"""


class PaymentServiceError(Exception):
    """Error base del servicio de pagos."""

    status_code: int = 500

    def __init__(self, message: str, code: str = "PAYMENT_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConfigurationError(PaymentServiceError):
    """Falta un precio, monto o credencial para completar la operación."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message=message, code="CONFIGURATION_ERROR")


class NotConfiguredError(PaymentServiceError):
    """El proveedor solicitado no está registrado."""

    status_code = 400

    def __init__(self, provider: str):
        super().__init__(
            message=f"Payment provider {provider} not configured",
            code="PROVIDER_NOT_CONFIGURED",
        )
        self.provider = provider


class NoProviderConfiguredError(PaymentServiceError):
    """No hay ningún proveedor de pago configurado."""

    status_code = 503

    def __init__(self):
        super().__init__(
            message="No payment provider configured",
            code="NO_PROVIDER_CONFIGURED",
        )


class UnsupportedOperationError(PaymentServiceError):
    """La operación no tiene sentido para el proveedor (ej: cancelar en Transbank)."""

    status_code = 400

    def __init__(self, provider: str, operation: str):
        super().__init__(
            message=f"Operation '{operation}' is not supported by {provider}",
            code="UNSUPPORTED_OPERATION",
        )
        self.provider = provider
        self.operation = operation


class PlanNotPurchasableError(PaymentServiceError):
    """El plan no se puede contratar vía checkout (FREE o ENTERPRISE)."""

    status_code = 400

    def __init__(self, plan_id: str, reason: str):
        super().__init__(
            message=f"Plan {plan_id} cannot be purchased: {reason}",
            code="PLAN_NOT_PURCHASABLE",
        )
        self.plan_id = plan_id


class UpstreamGatewayError(PaymentServiceError):
    """
    Error de red o HTTP de una pasarela.

    El mensaje público es genérico; el detalle del proveedor queda en
    `detail` solo para logging.
    """

    status_code = 502

    def __init__(
        self,
        provider: str,
        operation: str,
        detail: str | None = None,
        upstream_status: int | None = None,
    ):
        super().__init__(
            message=f"Payment provider {provider} failed to {operation}",
            code="UPSTREAM_GATEWAY_ERROR",
        )
        self.provider = provider
        self.operation = operation
        self.detail = detail
        self.upstream_status = upstream_status


class WebhookVerificationError(PaymentServiceError):
    """Error de verificación de webhook."""

    status_code = 401

    def __init__(self, provider: str, message: str = "Invalid signature"):
        super().__init__(
            message=f"Webhook verification failed ({provider}): {message}",
            code="WEBHOOK_VERIFICATION_FAILED",
        )
        self.provider = provider


class SubscriptionNotFoundError(PaymentServiceError):
    """El tenant no tiene suscripción registrada."""

    status_code = 404

    def __init__(self, tenant_id: str):
        super().__init__(
            message=f"Subscription not found for tenant: {tenant_id}",
            code="SUBSCRIPTION_NOT_FOUND",
        )
        self.tenant_id = tenant_id


class PaymentMethodNotFoundError(PaymentServiceError):
    """El medio de pago no existe para el tenant."""

    status_code = 404

    def __init__(self, payment_method_id: str):
        super().__init__(
            message=f"Payment method not found: {payment_method_id}",
            code="PAYMENT_METHOD_NOT_FOUND",
        )
        self.payment_method_id = payment_method_id


class PaymentNotFoundError(PaymentServiceError):
    status_code = 404

    def __init__(self, payment_id: str):
        super().__init__(
            message=f"Payment not found: {payment_id}",
            code="PAYMENT_NOT_FOUND",
        )
        self.payment_id = payment_id


class OneclickRejectedError(PaymentServiceError):
    """Transbank rechazó la inscripción o la autorización Oneclick."""

    status_code = 400

    def __init__(self, operation: str, response_code: int | None):
        super().__init__(
            message=f"Oneclick {operation} rejected (response_code={response_code})",
            code="ONECLICK_REJECTED",
        )
        self.operation = operation
        self.response_code = response_code
