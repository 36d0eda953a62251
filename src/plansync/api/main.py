"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from plansync.api.middleware.exception_handler import setup_exception_handlers
from plansync.api.middleware.logging import LoggingMiddleware
from plansync.api.routes import health_router, subscriptions_router, webhooks_router
from plansync.core.config import get_settings
from plansync.core.logging import configure_logging, get_logger
from plansync.runtime import Runtime, build_runtime

settings = get_settings()

configure_logging(
    json_logs=settings.is_production,
    log_level="DEBUG" if settings.debug else "INFO",
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = build_runtime(settings)
    yield
    logger.info("application_shutdown")
    if owns_runtime:
        await app.state.runtime.close()


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Pre-wired services; built at startup when omitted
    """
    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Subscription lifecycle and usage plan membership service",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(LoggingMiddleware)
    setup_exception_handlers(app)

    app.include_router(health_router, tags=["Health"])
    app.include_router(
        webhooks_router,
        prefix=f"{settings.api_v1_prefix}/webhooks",
        tags=["Webhooks"],
    )
    app.include_router(
        subscriptions_router,
        prefix=f"{settings.api_v1_prefix}/subscriptions",
        tags=["Subscriptions"],
    )

    return app


app = create_app()
