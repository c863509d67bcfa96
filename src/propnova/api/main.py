"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from propnova.api.middleware import LoggingMiddleware, MetricsMiddleware, setup_exception_handlers
from propnova.api.routes import billing_router, health_router, me_router, payfast_router
from propnova.billing.plans import CATALOG_VERSION
from propnova.core.config import get_settings
from propnova.core.logging import configure_logging, get_logger
from propnova.core.redis import close_redis

settings = get_settings()

configure_logging(
    json_logs=settings.is_production,
    log_level="DEBUG" if settings.debug else "INFO",
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        catalog_version=CATALOG_VERSION,
        gateway_validation=settings.payfast_validate_notifications,
    )
    yield
    logger.info("application_shutdown")
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Subscription, metering and payment service",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_exception_handlers(app)

    app.include_router(health_router, tags=["Health"])
    app.include_router(
        billing_router,
        prefix=f"{settings.api_v1_prefix}/billing",
        tags=["Billing"],
    )
    app.include_router(
        payfast_router,
        prefix=f"{settings.api_v1_prefix}/billing/payfast",
        tags=["Payment gateway"],
    )
    app.include_router(
        me_router,
        prefix=f"{settings.api_v1_prefix}/me",
        tags=["Me"],
    )

    return app


app = create_app()
