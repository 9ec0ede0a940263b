"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.asyncio import Redis

from billsync import __version__, dependencies
from billsync.config import get_settings
from billsync.middleware import request_context_middleware
from billsync.models import ErrorResponse
from billsync.routers import (
    checkout_router,
    health_router,
    reconcile_router,
    status_router,
    webhooks_router,
)
from billsync.services.provider import StripeGateway
from billsync.utils.logging import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging()

    logger.info("redis_connecting")
    dependencies.redis_client = Redis.from_url(
        str(settings.redis_url),
        decode_responses=False,
    )

    if settings.stripe_secret_key is not None:
        dependencies.provider_gateway = StripeGateway.from_settings(settings)
        logger.info("provider_gateway_initialized")
    else:
        logger.warning("provider_gateway_unconfigured", reason="STRIPE_SECRET_KEY not set")

    if settings.stripe_webhook_secret is None:
        logger.warning("webhook_secret_unconfigured")

    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment.value,
            traces_sample_rate=0.1,
        )
        logger.info("sentry_initialized")

    logger.info("startup_complete", environment=settings.environment.value)

    yield

    logger.info("shutting_down")
    if dependencies.redis_client:
        await dependencies.redis_client.aclose()
        dependencies.redis_client = None
    dependencies.provider_gateway = None
    logger.info("shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="billsync",
        description="""
## Billing-state reconciliation

Keeps each user's local billing record in line with the payment provider.

### Write paths

- **Webhooks**: signed provider events update the matching record
- **Reconcile**: operators reconcile one user or sweep every record
- **Checkout**: starts a subscription checkout tagged with the user and plan

### Authentication

Operator endpoints (`/reconcile/*`, `/status/*`) require the `X-API-Key`
header when an operator key is configured.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_context_middleware)

    if settings.prometheus_enabled:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(reconcile_router)
    app.include_router(status_router)
    app.include_router(checkout_router)

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.debug:
            body = ErrorResponse(
                error="internal_server_error",
                message=str(exc),
                details={"type": type(exc).__name__},
            )
        else:
            body = ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred",
            )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(exclude_none=True),
        )

    return app


app = create_app()


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "billsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.value.lower(),
    )
