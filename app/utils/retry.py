"""
Reintentos acotados con backoff exponencial y jitter completo.
"""

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

import structlog


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float = 0.25,
    max_delay: float = 4.0,
) -> float:
    """
    Calcula la espera antes del reintento `attempt` (1-indexado).

    Jitter completo: un valor uniforme entre 0 y min(max_delay, base * 2^(n-1)).
    """
    ceiling = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return random.uniform(0, ceiling)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    should_retry: Callable[[Exception], bool],
    max_retries: int = 2,
    base_delay: float = 0.25,
    max_delay: float = 4.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Ejecuta `operation` reintentando solo errores transitorios.

    Args:
        operation: Corrutina sin argumentos a ejecutar
        should_retry: Decide si una excepción es transitoria
        max_retries: Reintentos adicionales al primer intento
        sleep: Inyectable para tests

    Returns:
        Resultado de la operación

    Raises:
        La última excepción si se agotan los reintentos o no es transitoria
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "Transient error, retrying",
                attempt=attempt,
                max_retries=max_retries,
                delay_seconds=round(delay, 3),
                error_type=type(e).__name__,
            )
            await sleep(delay)
