"""
Main FastAPI application.

Deposit gateway API with:
- CORS configuration
- Domain error rendering ({success, message, errors})
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deposit_gateway import __version__
from deposit_gateway.config import get_settings
from deposit_gateway.core.deposits import DepositService
from deposit_gateway.core.exceptions import DepositError
from deposit_gateway.database.connection import close_db, init_db
from deposit_gateway.integrations.fedapay_client import FedaPayClient
from deposit_gateway.monitoring.logging import setup_logging

from .routes import deposit_router, monitoring_router, payment_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the FedaPay client and deposit service, initializes the database
    and releases both on shutdown.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        fedapay_environment=settings.fedapay_environment,
        webhook_verification=bool(settings.fedapay_webhook_secret),
    )
    if not settings.fedapay_webhook_secret:
        logger.warning("webhook_secret_missing_all_webhooks_rejected")

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    processor = FedaPayClient(settings)
    app.state.processor = processor
    app.state.deposit_service = DepositService(settings, processor)

    yield

    logger.info("application_shutdown")
    await processor.close()
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="Deposit Gateway",
    description=(
        "Mobile-money deposit API backed by FedaPay. Creates deposits, "
        "reconciles outcomes from callbacks, webhooks and polling, and credits "
        "user balances exactly once."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(DepositError)
async def deposit_error_handler(request: Request, exc: DepositError) -> JSONResponse:
    """Render domain errors; raw detail only outside production."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "deposit_error",
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        message=exc.message,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(include_detail=not settings.is_production),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Schema errors use the same 400 body as business validation."""
    errors = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    logger.info("request_validation_failed", errors=errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Invalid request data", "errors": errors},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "message": "Internal server error"},
    )


app.include_router(deposit_router)
app.include_router(payment_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "fedapay_environment": settings.fedapay_environment,
        "endpoints": {
            "deposits": "/deposits",
            "callback": "/payments/callback",
            "webhook": "/payments/webhook",
            "health": "/health",
            "metrics": "/metrics",
            "docs": "/docs",
        },
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "deposit_gateway.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
