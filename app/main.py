"""
SaaS Billing Service
FastAPI application entry point.
"""

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.context import request_id_var
from app.db.database import close_db, init_db
from app.routes import payments_router, webhooks_router
from app.schemas import ErrorResponse
from app.services import PaymentService
from app.utils.exceptions import PaymentServiceError
from app.utils.idempotency import close_redis


def configure_logging(settings: Settings) -> None:
    """Logging estructurado: JSON en producción, consola en desarrollo."""
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == "production"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger(__name__)


def _provider_names(request: Request) -> list[str]:
    return [p.value for p in request.app.state.payments.get_available_providers()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Construye el registro de pasarelas y libera recursos al apagar."""
    app.state.payments = PaymentService.from_settings(settings)
    logger.info(
        "Starting Billing Service",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        providers=[p.value for p in app.state.payments.get_available_providers()],
    )

    await init_db()

    yield

    logger.info("Shutting down Billing Service")
    await app.state.payments.aclose()
    await close_db()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Facturación de suscripciones con Stripe, Transbank, MercadoPago y Flow",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Asigna request_id a cada petición y registra su duración."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    started = time.perf_counter()

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    """Traduce los errores de dominio a ErrorResponse con su status HTTP."""
    if exc.status_code >= 500:
        logger.error("Request failed", code=exc.code, error=exc.message, path=request.url.path)
    else:
        logger.info("Request rejected", code=exc.code, error=exc.message, path=request.url.path)

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            message=exc.message,
            code=exc.code,
            request_id=request_id_var.get() or None,
        ).model_dump(),
    )


@app.get("/", tags=["Health"])
async def root(request: Request):
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "providers": _provider_names(request),
    }


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Liveness con las pasarelas configuradas."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "providers": _provider_names(request),
    }


app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])
app.include_router(webhooks_router, prefix="/api/webhooks", tags=["Webhooks"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
