"""API routes module."""

from practicegate.api.routes.billing import router as billing_router
from practicegate.api.routes.exports import router as exports_router
from practicegate.api.routes.health import router as health_router
from practicegate.api.routes.webhooks import router as webhooks_router

__all__ = [
    "billing_router",
    "exports_router",
    "health_router",
    "webhooks_router",
]
