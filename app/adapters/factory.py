"""
Factory para construir los proveedores de pago configurados.
Solo se instancian los adapters cuyas credenciales están presentes.
"""

import httpx
import structlog

from app.adapters.base import PaymentProvider
from app.adapters.flow_adapter import FlowAdapter
from app.adapters.mercadopago_adapter import MercadoPagoAdapter
from app.adapters.stripe_adapter import StripeAdapter
from app.adapters.transbank_adapter import TransbankAdapter
from app.config import Settings
from app.schemas.billing import ProviderName


logger = structlog.get_logger(__name__)


def build_providers(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[ProviderName, PaymentProvider]:
    """
    Construye los adapters a partir de la configuración.

    Args:
        settings: Configuración explícita (no se lee el entorno aquí)
        transport: Transporte httpx opcional, usado en tests

    Returns:
        Dict en orden de declaración de ProviderName
    """
    providers: dict[ProviderName, PaymentProvider] = {}
    http_options = settings.http_options

    stripe_config = settings.stripe_config()
    if stripe_config is not None:
        providers[ProviderName.STRIPE] = StripeAdapter(stripe_config)

    transbank_config = settings.transbank_config()
    if transbank_config is not None:
        providers[ProviderName.TRANSBANK] = TransbankAdapter(
            transbank_config, http_options, transport
        )

    mercadopago_config = settings.mercadopago_config()
    if mercadopago_config is not None:
        providers[ProviderName.MERCADOPAGO] = MercadoPagoAdapter(
            mercadopago_config, http_options, transport
        )

    flow_config = settings.flow_config()
    if flow_config is not None:
        providers[ProviderName.FLOW] = FlowAdapter(flow_config, http_options, transport)

    logger.info(
        "Payment providers initialized",
        providers=[name.value for name in providers],
    )
    return providers
