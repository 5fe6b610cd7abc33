from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from giftsync_api.core.settings import settings
from giftsync_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .jobs.gift_cycle import GiftCycleRunner
from .observability.tracing import configure_tracing
from .scheduling import GiftCycleScheduler


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    runner: GiftCycleRunner = app.state.gift_cycle_runner
    scheduler = GiftCycleScheduler(runner)
    app.state.gift_cycle_scheduler = scheduler

    scheduler_enabled = settings.gift_cycle_scheduler_enabled
    if scheduler_enabled:
        scheduler.start()
        logger.info(
            "Gift cycle scheduler enabled",
            cron=scheduler.cron,
            timezone=settings.gift_cycle_timezone,
        )
    else:
        logger.info(
            "Gift cycle scheduler disabled",
            reason="gift_cycle_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if scheduler_enabled and scheduler.is_running:
            await scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the gift sync FastAPI service."""
    configure_logging(
        service_name="giftsync-api",
        environment=settings.environment,
        version=APP_VERSION,
    )
    app = FastAPI(
        title="Gift Sync API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-API-Key"],
        max_age=86400,
    )
    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name="giftsync-api",
            service_version=APP_VERSION,
            environment=settings.environment,
        )

    app.state.gift_cycle_runner = GiftCycleRunner(
        _session_factory,
        email_send_delay_seconds=settings.email_send_delay_seconds,
    )
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
