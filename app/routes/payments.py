"""
Endpoints de facturación del tenant.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from app.schemas import (
    PLANS,
    APIResponse,
    CheckoutRequest,
    CheckoutResponse,
    OneclickAuthorizeRequest,
    OneclickAuthorizeResponse,
    OneclickInscriptionFinishResponse,
    OneclickInscriptionStartRequest,
    OneclickInscriptionStartResponse,
    OneclickTransactionStatusResponse,
    PaymentMethodsResponse,
    PaymentResponse,
    PortalResponse,
    ProviderName,
    ProvidersResponse,
    SubscriptionPlan,
    SubscriptionResponse,
)
from app.routes.dependencies import (
    TenantIdentity,
    get_billing_service,
    get_payment_service,
    get_tenant,
)
from app.services import BillingService, PaymentService
from app.utils.exceptions import NoProviderConfiguredError
from app.utils.idempotency import get_idempotency_manager


logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/plans",
    response_model=APIResponse[list[SubscriptionPlan]],
    summary="Catálogo de planes",
)
async def list_plans():
    return APIResponse(success=True, data=list(PLANS.values()))


@router.get(
    "/providers",
    response_model=APIResponse[ProvidersResponse],
    summary="Pasarelas disponibles",
)
async def list_providers(
    region: Annotated[str, Query(min_length=2, max_length=2)] = "CL",
    payments: PaymentService = Depends(get_payment_service),
):
    """Pasarelas configuradas y la preferida para la región."""
    try:
        preferred = payments.get_preferred_provider(region)
    except NoProviderConfiguredError:
        preferred = None

    return APIResponse(
        success=True,
        data=ProvidersResponse(
            available=payments.get_available_providers(),
            preferred=preferred,
            region=region.upper(),
        ),
    )


@router.post(
    "/checkout",
    response_model=APIResponse[CheckoutResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Iniciar checkout de un plan",
    description="""
    Crea una sesión de checkout en la pasarela elegida (o la preferida de la región).

    - Soporta idempotencia via header `Idempotency-Key`
    - ENTERPRISE y FREE no se pueden contratar por checkout
    - La suscripción se activa cuando llega el webhook de la pasarela
    """,
)
async def create_checkout(
    request: CheckoutRequest,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    if not idempotency_key:
        result = await service.create_checkout(tenant.tenant_id, request, email=tenant.email)
        return APIResponse(success=True, message="Checkout created", data=result)

    idempotency_manager = await get_idempotency_manager()
    cached = await idempotency_manager.get_cached_response(tenant.tenant_id, idempotency_key)
    if cached:
        logger.info("Returning cached checkout", idempotency_key=idempotency_key)
        return APIResponse(
            success=True,
            message="Checkout retrieved from cache (idempotent)",
            data=CheckoutResponse(**cached),
        )

    if not await idempotency_manager.acquire_lock(tenant.tenant_id, idempotency_key):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Request with this idempotency key is already being processed",
        )

    try:
        result = await service.create_checkout(tenant.tenant_id, request, email=tenant.email)
        await idempotency_manager.cache_response(
            tenant.tenant_id,
            idempotency_key,
            result.model_dump(mode="json"),
        )
    finally:
        await idempotency_manager.release_lock(tenant.tenant_id, idempotency_key)

    return APIResponse(success=True, message="Checkout created", data=result)


@router.get(
    "/subscription",
    response_model=APIResponse[SubscriptionResponse],
    summary="Suscripción del tenant",
)
async def get_subscription(
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    subscription = await service.get_subscription(tenant.tenant_id)
    return APIResponse(success=True, data=subscription)


@router.post(
    "/subscription/cancel",
    response_model=APIResponse[SubscriptionResponse],
    summary="Cancelar la suscripción",
)
async def cancel_subscription(
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    subscription = await service.cancel_subscription(tenant.tenant_id)
    return APIResponse(
        success=True,
        message="Subscription canceled successfully",
        data=subscription,
    )


@router.get(
    "/history",
    response_model=APIResponse[list[PaymentResponse]],
    summary="Pagos del tenant",
)
async def list_payments(
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    return APIResponse(success=True, data=await service.list_payments(tenant.tenant_id))


@router.get(
    "/methods",
    response_model=APIResponse[PaymentMethodsResponse],
    summary="Medios de pago del tenant",
)
async def list_payment_methods(
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    """Medios guardados (default primero) y los que reporta la pasarela."""
    methods = await service.list_payment_methods(tenant.tenant_id)
    return APIResponse(success=True, data=PaymentMethodsResponse(data=methods))


@router.delete(
    "/methods/{payment_method_id}",
    response_model=APIResponse[None],
    summary="Eliminar un medio de pago",
)
async def delete_payment_method(
    payment_method_id: str,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    await service.delete_payment_method(tenant.tenant_id, payment_method_id)
    return APIResponse(success=True, message="Payment method deleted")


@router.get(
    "/portal",
    response_model=APIResponse[PortalResponse],
    summary="URL del portal de cliente",
)
async def get_portal(
    provider: ProviderName = ProviderName.STRIPE,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    url = await service.get_portal_url(tenant.tenant_id, provider)
    return APIResponse(success=True, data=PortalResponse(portal_url=url))


# ============================================
# Oneclick (Transbank)
# ============================================

@router.post(
    "/oneclick/inscriptions",
    response_model=APIResponse[OneclickInscriptionStartResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Iniciar inscripción Oneclick",
)
async def start_oneclick_inscription(
    request: OneclickInscriptionStartRequest,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    if not tenant.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Email header is required for Oneclick inscriptions",
        )

    result = await service.start_oneclick_inscription(
        tenant.tenant_id,
        tenant.email,
        response_url=request.response_url,
    )
    return APIResponse(success=True, data=result)


@router.put(
    "/oneclick/inscriptions/{token}",
    response_model=APIResponse[OneclickInscriptionFinishResponse],
    summary="Terminar inscripción Oneclick",
)
async def finish_oneclick_inscription(
    token: str,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.finish_oneclick_inscription(tenant.tenant_id, token)
    return APIResponse(success=True, message="Card enrolled", data=result)


@router.delete(
    "/oneclick/{payment_method_id}",
    response_model=APIResponse[None],
    summary="Eliminar inscripción Oneclick",
)
async def delete_oneclick_inscription(
    payment_method_id: str,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    await service.delete_oneclick_inscription(tenant.tenant_id, payment_method_id)
    return APIResponse(success=True, message="Oneclick inscription deleted")


@router.post(
    "/oneclick/authorize",
    response_model=APIResponse[OneclickAuthorizeResponse],
    summary="Cobrar una tarjeta inscrita",
)
async def authorize_oneclick_payment(
    request: OneclickAuthorizeRequest,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.authorize_oneclick_payment(tenant.tenant_id, request)
    return APIResponse(success=True, message="Payment authorized", data=result)


@router.get(
    "/oneclick/transactions/{buy_order}",
    response_model=APIResponse[OneclickTransactionStatusResponse],
    summary="Estado de una transacción Oneclick",
)
async def get_oneclick_transaction_status(
    buy_order: str,
    tenant: TenantIdentity = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    result = await service.get_oneclick_transaction_status(tenant.tenant_id, buy_order)
    return APIResponse(success=True, data=result)
