"""
Control de idempotencia para creación de checkouts.
Evita abrir dos sesiones de pago por el mismo Idempotency-Key.
"""

import json
from datetime import timedelta
from typing import Any

import structlog
import redis.asyncio as redis
from redis.exceptions import RedisError

from app.config import get_settings


logger = structlog.get_logger(__name__)

# Tiempo de expiración de claves de idempotencia (24 horas)
IDEMPOTENCY_TTL_HOURS = 24
LOCK_TTL_SECONDS = 30


def _scoped(tenant_id: str, idempotency_key: str) -> str:
    """Las claves se aíslan por tenant: dos tenants pueden usar la misma key."""
    return f"{tenant_id}:{idempotency_key}"


class IdempotencyManager:
    """
    Gestor de idempotencia usando Redis.

    Almacena la respuesta del checkout para retornarla si se recibe
    nuevamente la misma Idempotency-Key del mismo tenant.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "billing:idempotency:"):
        self._redis = redis_client
        self._prefix = prefix

    def _make_key(self, tenant_id: str, idempotency_key: str) -> str:
        return f"{self._prefix}{_scoped(tenant_id, idempotency_key)}"

    def _make_lock_key(self, tenant_id: str, idempotency_key: str) -> str:
        return f"{self._prefix}lock:{_scoped(tenant_id, idempotency_key)}"

    async def get_cached_response(
        self,
        tenant_id: str,
        idempotency_key: str,
    ) -> dict[str, Any] | None:
        """
        Obtiene una respuesta cacheada.

        Returns:
            Respuesta cacheada o None si no existe
        """
        try:
            data = await self._redis.get(self._make_key(tenant_id, idempotency_key))
            if data:
                logger.info(
                    "Idempotency cache hit",
                    idempotency_key=idempotency_key,
                )
                return json.loads(data)
            return None

        except RedisError as e:
            logger.error(
                "Redis error getting idempotency key",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            # Sin Redis el request continúa sin cache
            return None

    async def cache_response(
        self,
        tenant_id: str,
        idempotency_key: str,
        response: dict[str, Any],
        ttl_hours: int = IDEMPOTENCY_TTL_HOURS,
    ) -> bool:
        try:
            await self._redis.setex(
                self._make_key(tenant_id, idempotency_key),
                timedelta(hours=ttl_hours),
                json.dumps(response, default=str),
            )
            logger.info(
                "Response cached for idempotency",
                idempotency_key=idempotency_key,
                ttl_hours=ttl_hours,
            )
            return True

        except RedisError as e:
            logger.error(
                "Redis error caching response",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            return False

    async def acquire_lock(self, tenant_id: str, idempotency_key: str) -> bool:
        """
        Intenta tomar el lock de procesamiento.

        Returns:
            False si otro request con la misma key está en curso
        """
        try:
            acquired = await self._redis.set(
                self._make_lock_key(tenant_id, idempotency_key),
                "processing",
                nx=True,
                ex=LOCK_TTL_SECONDS,
            )
            return bool(acquired)

        except RedisError as e:
            logger.error(
                "Redis error acquiring processing lock",
                error=str(e),
                idempotency_key=idempotency_key,
            )
            return True

    async def release_lock(self, tenant_id: str, idempotency_key: str) -> None:
        try:
            await self._redis.delete(self._make_lock_key(tenant_id, idempotency_key))
        except RedisError as e:
            logger.error(
                "Redis error releasing lock",
                error=str(e),
                idempotency_key=idempotency_key,
            )


class InMemoryIdempotencyManager:
    """
    Implementación en memoria para desarrollo sin Redis.

    NO USAR EN PRODUCCIÓN - no es persistente ni distribuido.
    """

    def __init__(self):
        self._cache: dict[str, dict[str, Any]] = {}
        self._locks: set[str] = set()

    async def get_cached_response(
        self, tenant_id: str, idempotency_key: str
    ) -> dict[str, Any] | None:
        return self._cache.get(_scoped(tenant_id, idempotency_key))

    async def cache_response(
        self,
        tenant_id: str,
        idempotency_key: str,
        response: dict[str, Any],
        ttl_hours: int = IDEMPOTENCY_TTL_HOURS,
    ) -> bool:
        self._cache[_scoped(tenant_id, idempotency_key)] = response
        return True

    async def acquire_lock(self, tenant_id: str, idempotency_key: str) -> bool:
        key = _scoped(tenant_id, idempotency_key)
        if key in self._locks:
            return False
        self._locks.add(key)
        return True

    async def release_lock(self, tenant_id: str, idempotency_key: str) -> None:
        self._locks.discard(_scoped(tenant_id, idempotency_key))


# Singletons del proceso
_redis_client: redis.Redis | None = None
_idempotency_manager: IdempotencyManager | InMemoryIdempotencyManager | None = None


async def get_redis_client() -> redis.Redis:
    """Obtiene o crea el cliente Redis."""
    global _redis_client

    if _redis_client is None:
        redis_url = get_settings().REDIS_URL
        _redis_client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis client initialized", url=redis_url.split("@")[-1])

    return _redis_client


async def get_idempotency_manager() -> IdempotencyManager | InMemoryIdempotencyManager:
    """
    Obtiene el gestor de idempotencia con fallback a memoria.

    Hace un ping a Redis la primera vez; si no responde usa la
    implementación en memoria.
    """
    global _idempotency_manager

    if _idempotency_manager is None:
        try:
            client = await get_redis_client()
            await client.ping()
            _idempotency_manager = IdempotencyManager(client)
        except (RedisError, OSError) as e:
            logger.warning(
                "Failed to connect to Redis, using in-memory idempotency",
                error=str(e),
            )
            _idempotency_manager = InMemoryIdempotencyManager()

    return _idempotency_manager


async def close_redis() -> None:
    """Cierra la conexión de Redis."""
    global _redis_client, _idempotency_manager

    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("Redis connection closed")

    _redis_client = None
    _idempotency_manager = None
