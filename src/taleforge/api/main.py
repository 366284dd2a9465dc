"""FastAPI application entry point.

Main application configuration, middleware, and startup lifecycle.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from taleforge.core.config import get_settings
from taleforge.core.supabase import close_supabase_clients
from taleforge.models.database import close_db, init_db
from taleforge.providers import get_provider_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Startup:
    - Initialize database connection pool
    - Report which AI providers are configured

    Shutdown:
    - Close database connections and Supabase clients
    """
    settings = get_settings()

    logger.info("Initializing database connection...")
    init_db(
        settings.async_database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    logger.info("Database initialized")

    registry = get_provider_registry()
    for modality in ("text", "image", "speech"):
        primary = getattr(registry, f"{modality}_primary")
        fallback = getattr(registry, f"{modality}_fallback")
        if primary is None:
            logger.warning("No %s provider configured", modality)
        else:
            logger.info(
                "%s provider: %s (fallback: %s)",
                modality,
                primary.provider_type.value,
                fallback.provider_type.value if fallback else "none",
            )

    yield

    # Shutdown
    logger.info("Shutting down...")
    await close_db()
    close_supabase_clients()
    logger.info("Database connections closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()
    is_production = settings.environment == "production"

    app = FastAPI(
        title="TaleForge API",
        description="Interactive AI stories for children with illustrations and narration",
        version=settings.app_version,
        docs_url="/api/docs" if not is_production else None,
        redoc_url="/api/redoc" if not is_production else None,
        openapi_url="/api/openapi.json" if not is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add compression for responses > 1KB
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    from taleforge.api.middleware import RateLimitMiddleware
    app.add_middleware(RateLimitMiddleware)

    # Import and register routers
    from taleforge.api.routers import (
        account,
        admin,
        billing,
        characters,
        feedback,
        health,
        sse,
        stories,
        waitlist,
    )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(stories.router, prefix="/api/stories", tags=["stories"])
    app.include_router(sse.router, prefix="/api/sse", tags=["sse"])
    app.include_router(characters.router, prefix="/api/characters", tags=["characters"])
    app.include_router(feedback.router, prefix="/api/feedback", tags=["feedback"])
    app.include_router(waitlist.router, prefix="/api/waitlist", tags=["waitlist"])
    app.include_router(account.router, prefix="/api/account", tags=["account"])
    app.include_router(billing.router, prefix="/api/billing", tags=["billing"])
    app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

    # Register exception handlers
    from taleforge.api.exceptions import register_exception_handlers
    register_exception_handlers(app)

    from taleforge.api.openapi import custom_openapi
    app.openapi = lambda: custom_openapi(app)

    return app


# Application instance for uvicorn
app = create_app()
