"""FastAPI dependencies for storage, the provider gateway and operator auth."""

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader
from redis.asyncio import Redis

from billsync.config import get_settings
from billsync.services.orchestrator import ReconciliationOrchestrator
from billsync.services.provider import BaseProviderGateway
from billsync.services.record_store import RecordStore
from billsync.services.webhooks import WebhookProcessor

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Initialized in app startup
redis_client: Redis | None = None
provider_gateway: BaseProviderGateway | None = None


async def get_redis() -> Redis:
    """Get Redis connection."""
    if redis_client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Redis connection not available",
        )
    return redis_client


async def get_gateway() -> BaseProviderGateway:
    """Get the payment provider gateway."""
    if provider_gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return provider_gateway


async def get_record_store(redis: Redis = Depends(get_redis)) -> RecordStore:
    return RecordStore(redis)


async def get_orchestrator(
    store: RecordStore = Depends(get_record_store),
    gateway: BaseProviderGateway = Depends(get_gateway),
) -> ReconciliationOrchestrator:
    settings = get_settings()
    return ReconciliationOrchestrator(
        store,
        gateway,
        concurrency=settings.sweep_concurrency,
        deadline_seconds=settings.sweep_deadline_seconds,
    )


async def get_webhook_processor(
    store: RecordStore = Depends(get_record_store),
    gateway: BaseProviderGateway = Depends(get_gateway),
) -> WebhookProcessor:
    settings = get_settings()
    secret = settings.stripe_webhook_secret
    return WebhookProcessor(
        store,
        gateway,
        webhook_secret=secret.get_secret_value() if secret else None,
    )


async def require_operator(api_key: str | None = Depends(api_key_header)) -> None:
    """
    Guard operator endpoints.

    When ``operator_api_key`` is configured the ``X-API-Key`` header must
    match it; with no key configured the endpoints are open.
    """
    expected = get_settings().operator_api_key
    if expected is None:
        return

    if not api_key or not hmac.compare_digest(
        api_key.encode(), expected.get_secret_value().encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-API-Key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# Type aliases for cleaner dependency injection
Store = Annotated[RecordStore, Depends(get_record_store)]
Gateway = Annotated[BaseProviderGateway, Depends(get_gateway)]
Orchestrator = Annotated[ReconciliationOrchestrator, Depends(get_orchestrator)]
Processor = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
