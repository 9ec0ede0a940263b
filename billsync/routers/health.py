"""Health check and service information endpoints."""

from fastapi import APIRouter, Depends
from redis.asyncio import Redis
from redis.exceptions import RedisError

from billsync import __version__, dependencies
from billsync.config import get_settings
from billsync.dependencies import get_redis
from billsync.models import HealthCheck

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthCheck,
    summary="Health check",
    description="Check Redis connectivity and whether the payment provider is configured.",
)
async def health_check(
    redis: Redis = Depends(get_redis),
) -> HealthCheck:
    """Check health of all services."""
    settings = get_settings()

    try:
        await redis.ping()
        redis_status = "healthy"
    except RedisError:
        redis_status = "unhealthy"

    provider_status = "configured" if dependencies.provider_gateway else "unconfigured"

    overall_status = "healthy"
    if redis_status == "unhealthy" or provider_status == "unconfigured":
        overall_status = "degraded"

    return HealthCheck(
        status=overall_status,
        version=__version__,
        environment=settings.environment.value,
        redis=redis_status,
        provider=provider_status,
    )


@router.get(
    "/",
    summary="API information",
    description="Get basic API information.",
)
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "billsync",
        "version": __version__,
        "description": "Billing-state reconciliation service",
        "documentation": "/docs",
        "health": "/health",
    }
