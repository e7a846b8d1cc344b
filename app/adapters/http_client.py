"""
Cliente HTTP para APIs de pasarelas.

Toda llamada tiene timeout explícito y reintentos acotados solo para
fallas transitorias.
"""

import asyncio
from typing import Any, Awaitable, Callable, Mapping

import httpx
import structlog

from app.config import HttpOptions
from app.schemas.billing import ProviderName
from app.utils.exceptions import UpstreamGatewayError
from app.utils.retry import retry_async


logger = structlog.get_logger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "DELETE"})
RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def is_transient(method: str, error: Exception) -> bool:
    """
    Decide si un error justifica reintentar.

    Errores de conexión se reintentan siempre (el request no llegó).
    Timeouts de lectura y 502/503/504 solo en métodos idempotentes.
    """
    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout)):
        return True
    if method.upper() in IDEMPOTENT_METHODS:
        return isinstance(error, (httpx.TimeoutException, _RetryableStatus))
    return False


class GatewayHttpClient:
    """Cliente async compartido por un adapter."""

    def __init__(
        self,
        provider: ProviderName,
        base_url: str,
        headers: Mapping[str, str] | None = None,
        options: HttpOptions | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._provider = provider
        self._options = options or HttpOptions()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=httpx.Timeout(self._options.timeout_seconds),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """
        Ejecuta un request y retorna el JSON de la respuesta.

        Args:
            method: Verbo HTTP
            path: Ruta relativa a la base URL
            operation: Nombre de la operación para logs y errores

        Returns:
            Cuerpo JSON decodificado, o None si la respuesta no tiene cuerpo

        Raises:
            UpstreamGatewayError: Error de red, HTTP >= 400 o JSON inválido
        """
        method = method.upper()

        async def send() -> httpx.Response:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                data=data,
                headers=headers,
            )
            if response.status_code in RETRYABLE_STATUS_CODES and method in IDEMPOTENT_METHODS:
                raise _RetryableStatus(response)
            return response

        try:
            response = await retry_async(
                send,
                should_retry=lambda e: is_transient(method, e),
                max_retries=self._options.max_retries,
                sleep=self._sleep,
            )
        except _RetryableStatus as e:
            response = e.response
        except httpx.HTTPError as e:
            logger.error(
                "Gateway request failed",
                provider=self._provider.value,
                operation=operation,
                error_type=type(e).__name__,
            )
            raise UpstreamGatewayError(
                self._provider.value,
                operation,
                detail=type(e).__name__,
            ) from e

        if response.is_error:
            logger.error(
                "Gateway returned error status",
                provider=self._provider.value,
                operation=operation,
                status_code=response.status_code,
            )
            raise UpstreamGatewayError(
                self._provider.value,
                operation,
                detail=response.text[:500],
                upstream_status=response.status_code,
            )

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamGatewayError(
                self._provider.value,
                operation,
                detail="Invalid JSON response",
                upstream_status=response.status_code,
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()
