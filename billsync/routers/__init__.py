"""Routers package."""

from billsync.routers.checkout import router as checkout_router
from billsync.routers.health import router as health_router
from billsync.routers.reconcile import router as reconcile_router
from billsync.routers.status import router as status_router
from billsync.routers.webhooks import router as webhooks_router

__all__ = [
    "checkout_router",
    "health_router",
    "reconcile_router",
    "status_router",
    "webhooks_router",
]
