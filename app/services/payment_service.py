"""
Registro de pasarelas de pago.
Resuelve qué adapter usar por nombre o por región.
"""

from typing import Mapping

import httpx
import structlog

from app.adapters.base import PaymentProvider
from app.adapters.factory import build_providers
from app.adapters.stripe_adapter import StripeAdapter
from app.adapters.transbank_adapter import TransbankAdapter
from app.config import Settings
from app.schemas.billing import ProviderName
from app.schemas.plan import PLAN_AMOUNTS_CLP, PlanId
from app.utils.exceptions import (
    ConfigurationError,
    NoProviderConfiguredError,
    NotConfiguredError,
)


logger = structlog.get_logger(__name__)

# Orden de preferencia para Chile
CL_PREFERENCE = (
    ProviderName.TRANSBANK,
    ProviderName.MERCADOPAGO,
    ProviderName.FLOW,
    ProviderName.STRIPE,
)


class PaymentService:
    """
    Registro de adapters configurados.

    Se construye una vez al iniciar el proceso y es de solo lectura después.
    """

    def __init__(self, providers: Mapping[ProviderName, PaymentProvider]):
        self._providers: dict[ProviderName, PaymentProvider] = {
            name: providers[name] for name in ProviderName if name in providers
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "PaymentService":
        return cls(build_providers(settings, transport))

    def get_provider(self, name: ProviderName | str) -> PaymentProvider:
        """
        Obtiene el adapter de una pasarela.

        Raises:
            NotConfiguredError: Si la pasarela no existe o no está configurada
        """
        try:
            provider_name = ProviderName(name)
        except ValueError:
            raise NotConfiguredError(str(name))

        provider = self._providers.get(provider_name)
        if provider is None:
            raise NotConfiguredError(provider_name.value)
        return provider

    def get_available_providers(self) -> list[ProviderName]:
        """Pasarelas configuradas, en orden de declaración."""
        return list(self._providers)

    def is_provider_available(self, name: ProviderName | str) -> bool:
        try:
            return ProviderName(name) in self._providers
        except ValueError:
            return False

    def get_providers_for_plan(self, plan_id: PlanId) -> list[ProviderName]:
        """Pasarelas capaces de cobrar el plan; vacío si el plan no es cobrable."""
        if PLAN_AMOUNTS_CLP.get(plan_id, 0) <= 0:
            return []

        names = []
        for name, provider in self._providers.items():
            if isinstance(provider, StripeAdapter) and not provider.has_price_for(plan_id):
                continue
            names.append(name)
        return names

    def get_preferred_provider(self, region: str = "CL") -> ProviderName:
        """
        Selección determinista de pasarela por región.

        CL: transbank, mercadopago, flow, stripe. Otras regiones: stripe.
        Si ninguna preferida está configurada se usa la primera disponible.

        Raises:
            NoProviderConfiguredError: Si no hay pasarelas configuradas
        """
        if not self._providers:
            raise NoProviderConfiguredError()

        if region.upper() == "CL":
            preference = CL_PREFERENCE
        else:
            preference = (ProviderName.STRIPE,)

        for name in preference:
            if name in self._providers:
                return name

        fallback = next(iter(self._providers))
        logger.debug(
            "No preferred provider for region, using first available",
            region=region,
            provider=fallback.value,
        )
        return fallback

    def get_transbank(self) -> TransbankAdapter:
        """Adapter de Transbank con su API extendida (Oneclick, commit)."""
        provider = self.get_provider(ProviderName.TRANSBANK)
        if not isinstance(provider, TransbankAdapter):
            raise ConfigurationError(
                f"Provider registered as transbank is {type(provider).__name__}"
            )
        return provider

    async def aclose(self) -> None:
        """Cierra los clientes HTTP de todos los adapters."""
        for provider in self._providers.values():
            await provider.aclose()
