"""
FastAPI application factory.

Responsibility:
    Composes configuration and the billing kernel into an HTTP application:
    engine initialization on startup, per-request correlation ids for the
    structured logs, the error mapping, and the routers.

Architecture position:
    API layer -- the outermost surface.  Only this package reads
    ``billing_config``; kernel services receive plain values.
"""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from billing_api.errors import register_error_handlers
from billing_api.routes import invoices_router, webhooks_router, work_items_router
from billing_config import BillingConfig, get_active_config
from billing_kernel import __version__
from billing_kernel.db.engine import create_tables, init_engine_from_url, is_initialized
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import LogContext, configure_logging, get_logger

logger = get_logger("api")

CORRELATION_HEADER = "X-Correlation-Id"


def create_app(config: BillingConfig | None = None, clock: Clock | None = None) -> FastAPI:
    """
    Build the application.

    An engine initialized before the call (tests) is reused; otherwise one
    is created from ``config.database`` on startup.
    """
    config = config or get_active_config()
    configure_logging(level=config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not is_initialized():
            init_engine_from_url(
                config.database.url,
                echo=config.database.echo,
                pool_size=config.database.pool_size,
                max_overflow=config.database.max_overflow,
            )
        if config.database.create_tables:
            create_tables()
        logger.info(
            "billing_api_started",
            extra={
                "version": __version__,
                "config_checksum": config.checksum,
                "webhook_secret_configured": config.webhooks.is_configured,
            },
        )
        yield
        logger.info("billing_api_stopped")

    app = FastAPI(title="Billing Engine", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.clock = clock or SystemClock()

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        with LogContext.bind(correlation_id=correlation_id):
            response = await call_next(request)
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    register_error_handlers(app)
    app.include_router(webhooks_router)
    app.include_router(invoices_router)
    app.include_router(work_items_router)
    return app
