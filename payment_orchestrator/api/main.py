"""
FastAPI application for the payment orchestrator.

Wires the payment, order, admin and monitoring routers; binds a request id
to every log line; maps an unavailable order store to 503.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from payment_orchestrator import __version__
from payment_orchestrator.config import get_settings
from payment_orchestrator.database.connection import close_db, init_db
from payment_orchestrator.database.store import StoreError
from payment_orchestrator.monitoring.logging import setup_logging

from .dependencies import shutdown_services
from .routes import admin_router, monitoring_router, order_router, payment_router

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables, then drain sagas and notifications before closing the database."""
    logger.info(
        "orchestrator_starting",
        env=settings.app_env,
        test_mode=settings.is_test_mode,
        secondary_sync=bool(settings.secondary_backend_url),
    )
    try:
        await init_db()
    except (SQLAlchemyError, OSError) as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("orchestrator_stopping")
    await shutdown_services()
    try:
        await close_db()
    except SQLAlchemyError as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="Payment Orchestrator",
    description=(
        "Order-payment confirmation and cancellation across the payment gateway, "
        "the order store and the order-management backend."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-User-Id", "X-User-Roles", REQUEST_ID_HEADER],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind the caller's X-Request-ID (or a fresh one) to logs and the response."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    started = time.monotonic()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed", error=str(e), duration_seconds=time.monotonic() - started)
        raise
    else:
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_handled",
            status_code=response.status_code,
            duration_seconds=time.monotonic() - started,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Nothing was changed at the gateway, so the caller can simply retry."""
    logger.error("store_unavailable", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Service unavailable", "message": "Order store is unavailable."},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "message": "Unexpected error."},
    )


for router in (payment_router, order_router, admin_router, monitoring_router):
    app.include_router(router)


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    return {
        "service": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "gateway_mode": "test" if settings.is_test_mode else "live",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "payment_orchestrator.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )
