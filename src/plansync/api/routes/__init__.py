"""API routes module."""

from plansync.api.routes.health import router as health_router
from plansync.api.routes.subscriptions import router as subscriptions_router
from plansync.api.routes.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "subscriptions_router",
    "webhooks_router",
]
