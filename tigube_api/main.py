"""
Tigube API - FastAPI Application Entry Point

Billing and entitlement backend of the Tigube pet-sitting marketplace:
- Supabase JWT authentication
- Stripe checkout, webhooks and customer portal
- Subscription to entitlement synchronization
- PostgreSQL user/subscription database
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tigube_api.config import get_settings
from tigube_api.db.database import init_db
from tigube_api.dependencies import get_auth_service
from tigube_api.routers import (
    admin_router,
    auth_router,
    billing_router,
    entitlements_router,
    health_router,
    webhooks_router,
)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Startup: Log configuration, create tables when configured
    - Shutdown: Clean up resources
    """
    settings = get_settings()

    # Startup
    logger.info(f"Starting Tigube API ({settings.app_env})")
    logger.info(f"CORS origins: {settings.cors_origins}")
    if settings.auto_create_tables:
        await init_db()

    yield

    # Shutdown
    logger.info("Shutting down Tigube API")
    await get_auth_service().close()


app = FastAPI(
    title="Tigube API",
    description="Billing and entitlement backend for the Tigube marketplace",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(auth_router)
app.include_router(entitlements_router)
app.include_router(billing_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Tigube API",
        "version": "1.0.0",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tigube_api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=not settings.is_production,
    )
