"""
Configuración de la base de datos y sesión async.
"""

import json
from typing import Any, AsyncGenerator
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.config import get_settings


logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def normalize_database_url(database_url: str) -> str:
    """
    Convierte postgresql:// a postgresql+asyncpg:// y remueve parámetros
    no soportados por asyncpg (como pgbouncer).
    """
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if not database_url.startswith("postgresql+asyncpg://"):
        return database_url

    parsed = urlparse(database_url)
    query_params = parse_qs(parsed.query)
    for param in ("pgbouncer", "sslmode"):
        query_params.pop(param, None)
    query_params["prepared_statement_cache_size"] = ["0"]

    return urlunparse((
        parsed.scheme,
        parsed.netloc,
        parsed.path,
        parsed.params,
        urlencode(query_params, doseq=True),
        parsed.fragment,
    ))


def create_engine_from_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Crea el engine async; con asyncpg se configura para pgbouncer."""
    database_url = normalize_database_url(database_url)
    kwargs: dict[str, Any] = {"echo": echo}

    if database_url.startswith("postgresql+asyncpg://"):
        kwargs.update(
            poolclass=NullPool,  # pgbouncer mantiene el pool
            json_serializer=lambda obj: json.dumps(obj, default=str),
            json_deserializer=lambda s: json.loads(s) if isinstance(s, str) else s,
            connect_args={
                "prepared_statement_cache_size": 0,
                "command_timeout": 60,
            },
        )

    return create_async_engine(database_url, **kwargs)


def get_engine() -> AsyncEngine:
    """Engine del proceso, creado en el primer uso."""
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = create_engine_from_url(settings.DATABASE_URL, echo=settings.DEBUG)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency que provee una sesión de base de datos.

    Uso con FastAPI:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def set_tenant_context(session: AsyncSession, tenant_id: Any) -> None:
    """
    Fija `app.current_tenant` para la transacción actual.

    Debe llamarse antes de cada lectura o escritura con alcance de tenant.
    En motores distintos de PostgreSQL no hay RLS y no se hace nada.
    """
    if session.get_bind().dialect.name != "postgresql":
        return

    await session.execute(
        text("SELECT set_config('app.current_tenant', :tenant_id, true)"),
        {"tenant_id": str(tenant_id)},
    )


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Inicializa la base de datos.
    Crea todas las tablas si no existen.
    """
    from app.db.models import Base

    logger.info("Initializing database...")

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Cierra las conexiones de la base de datos."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")

    _engine = None
    _session_factory = None
