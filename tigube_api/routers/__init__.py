"""API routers for Tigube."""

from tigube_api.routers.admin import router as admin_router
from tigube_api.routers.auth import router as auth_router
from tigube_api.routers.billing import router as billing_router
from tigube_api.routers.entitlements import router as entitlements_router
from tigube_api.routers.health import router as health_router
from tigube_api.routers.webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "auth_router",
    "billing_router",
    "entitlements_router",
    "health_router",
    "webhooks_router",
]
