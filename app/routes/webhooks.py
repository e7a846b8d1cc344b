"""
Endpoints para webhooks entrantes de las pasarelas.
"""

import json
from typing import Any
from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.adapters.base import WebhookResult
from app.context import request_id_var
from app.routes.dependencies import get_webhook_dispatcher
from app.schemas import ErrorResponse, ProviderName, WebhookAckResponse
from app.services import WebhookDispatcher


logger = structlog.get_logger(__name__)

router = APIRouter()


def _parse_json(payload: bytes) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body is not valid JSON",
        )
    if not isinstance(data, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a JSON object",
        )
    return data


def _to_response(provider: ProviderName, result: WebhookResult):
    """Un resultado fallido se responde con 500 para que la pasarela reintente."""
    if not result.success:
        logger.error(
            "Webhook processing failed",
            provider=provider.value,
            error=result.error,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                message="Failed to process webhook",
                code="WEBHOOK_PROCESSING_FAILED",
                request_id=request_id_var.get() or None,
            ).model_dump(),
        )

    return WebhookAckResponse(
        received=True,
        processed=result.processed,
        duplicate=result.duplicate,
    )


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    summary="Webhook de Stripe",
    description="""
    Endpoint para recibir webhooks de Stripe.

    - Valida la firma del webhook usando el header `Stripe-Signature`
    - Actualiza la suscripción, pagos y facturas del tenant
    - Las re-entregas de un evento ya procesado se reconocen sin efectos

    **Importante**: Este endpoint debe ser configurado en el dashboard de Stripe.
    """,
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    # Leer body crudo para validar firma
    payload = await request.body()
    result = await dispatcher.dispatch(
        ProviderName.STRIPE,
        raw_body=payload,
        data=_parse_json(payload),
        signature=stripe_signature,
    )
    return _to_response(ProviderName.STRIPE, result)


@router.api_route(
    "/transbank",
    methods=["GET", "POST"],
    response_model=WebhookAckResponse,
    summary="Retorno de Webpay Plus",
    description="""
    Recibe el retorno de Webpay Plus (`token_ws`, o `TBK_TOKEN` si el
    usuario abortó). El pago se confirma con un commit servidor a servidor.

    Acepta form-urlencoded, JSON o query string.
    """,
)
async def transbank_webhook(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    payload = await request.body()
    data: dict[str, Any] = dict(request.query_params)

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type and payload:
        data.update(_parse_json(payload))
    elif payload:
        data.update(parse_qsl(payload.decode("utf-8", errors="replace")))

    result = await dispatcher.dispatch(
        ProviderName.TRANSBANK,
        raw_body=payload,
        data=data,
    )
    return _to_response(ProviderName.TRANSBANK, result)


@router.post(
    "/mercadopago",
    response_model=WebhookAckResponse,
    summary="Webhook de MercadoPago",
    description="""
    Notificaciones de pagos y preapprovals.

    - Header requerido: `X-Signature` con formato `ts=<timestamp>;v1=<signature>`
    - El query param `topic` (o `type`) se usa si el cuerpo no trae el tipo
    """,
)
async def mercadopago_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="X-Signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    payload = await request.body()
    topic = request.query_params.get("topic") or request.query_params.get("type")

    result = await dispatcher.dispatch(
        ProviderName.MERCADOPAGO,
        raw_body=payload,
        data=_parse_json(payload),
        signature=x_signature,
        event_type=topic,
    )
    return _to_response(ProviderName.MERCADOPAGO, result)


@router.post(
    "/flow",
    response_model=WebhookAckResponse,
    summary="Webhook de Flow",
    description="""
    Confirmación de pagos de Flow.

    Header requerido: `X-Signature` con HMAC-SHA256 del cuerpo y su timestamp.
    """,
)
async def flow_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="X-Signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    payload = await request.body()
    result = await dispatcher.dispatch(
        ProviderName.FLOW,
        raw_body=payload,
        data=_parse_json(payload),
        signature=x_signature,
    )
    return _to_response(ProviderName.FLOW, result)
