"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from practicegate import __version__
from practicegate.api.middleware import (
    LoggingMiddleware,
    MetricsMiddleware,
    setup_exception_handlers,
)
from practicegate.api.routes import billing, exports, health, webhooks
from practicegate.core.config import get_settings
from practicegate.core.database import dispose_engine
from practicegate.core.logging import configure_logging, get_logger
from practicegate.core.redis import close_redis

settings = get_settings()

configure_logging(
    json_logs=settings.is_production,
    log_level="DEBUG" if settings.debug else "INFO",
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
    yield
    logger.info("application_shutdown")
    await close_redis()
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Subscription entitlements, usage metering and compliance exports",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(
        billing.router,
        prefix=f"{settings.api_v1_prefix}/billing",
        tags=["Billing"],
    )
    app.include_router(
        webhooks.router,
        prefix=f"{settings.api_v1_prefix}/webhooks",
        tags=["Webhooks"],
    )
    app.include_router(
        exports.router,
        prefix=f"{settings.api_v1_prefix}/exports",
        tags=["Exports"],
    )

    return app


app = create_app()
