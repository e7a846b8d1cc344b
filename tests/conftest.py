"""
Configuración de tests y fixtures compartidos.
"""

import json
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.db.database import get_db
from app.db.models import Base
from app.services import PaymentService


# Base de datos de testing en memoria (una sola conexión compartida)
TEST_DATABASE_URL = "sqlite+aiosqlite://"


class GatewayStub:
    """
    Pasarela falsa para httpx.MockTransport.

    Las respuestas se registran por (método, path); cada request recibido
    queda guardado en `requests`.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.handlers: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        status_code: int = 200,
    ) -> "GatewayStub":
        """Encola una respuesta; la última se repite si se agota la cola."""
        response = httpx.Response(status_code, json=json_body)
        self.routes.setdefault((method.upper(), path), []).append(response)
        return self

    def on(
        self,
        method: str,
        path: str,
        handler: Callable[[httpx.Request], httpx.Response],
    ) -> "GatewayStub":
        self.handlers[(method.upper(), path)] = handler
        return self

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.path == path
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)

        if key in self.handlers:
            return self.handlers[key](request)

        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, json={"message": "not found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def request_json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content)


@pytest.fixture
def gateway() -> GatewayStub:
    return GatewayStub()


@pytest.fixture
def tenant_id() -> str:
    return str(uuid4())


@pytest.fixture
def settings() -> Settings:
    """Settings con las cuatro pasarelas configuradas, sin leer el entorno."""
    return Settings(
        _env_file=None,
        DATABASE_URL=TEST_DATABASE_URL,
        GATEWAY_MAX_RETRIES=0,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_ID_PRO="price_pro",
        STRIPE_PRICE_ID_BUSINESS="price_business",
        TBK_COMMERCE_CODE="597055555532",
        TBK_API_KEY="tbk-secret",
        TBK_ONECLICK_COMMERCE_CODE="597055555541",
        TBK_ONECLICK_API_KEY="oneclick-secret",
        MERCADOPAGO_ACCESS_TOKEN="TEST-token",
        MERCADOPAGO_WEBHOOK_SECRET="mp-secret",
        FLOW_API_KEY="flow-key",
        FLOW_SECRET="flow-secret",
    )


@pytest.fixture
def payments(settings: Settings, gateway: GatewayStub) -> PaymentService:
    return PaymentService.from_settings(settings, transport=gateway.transport)


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Crea un engine de testing para cada test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Crea una sesión de testing."""
    async_session = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(
    test_session: AsyncSession,
    payments: PaymentService,
) -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP para tests de API."""
    from app.main import app

    async def override_get_db():
        yield test_session
        await test_session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.state.payments = payments

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
