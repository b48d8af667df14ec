import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from aiwatch.api.metrics import http_metrics_middleware
from aiwatch.api.metrics import router as metrics_router
from aiwatch.config.settings import Settings
from aiwatch.core.logger import setup_logger
from aiwatch.dependencies import MonitoringServices, build_services
from aiwatch.health.router import router as health_router
from aiwatch.ratelimit.middleware import rate_limit_middleware
from aiwatch.scheduler import create_scheduler


def create_app(settings: Settings | None = None, services: MonitoringServices | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration (defaults to environment-driven Settings)
        services: Pre-built service container; built from settings when omitted

    Returns:
        Configured FastAPI app with services on app.state.services
    """
    if services is None:
        settings = settings or Settings()
        services = build_services(settings)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Ensure tables exist and run maintenance jobs while the app is up.

        Note: FastAPI requires async for lifespan context manager,
        even if no await operations are used.
        """
        try:
            services.database.create_all()
        except Exception as e:
            # Health endpoints report the database as unhealthy instead
            logger.error(f"Failed to verify monitoring tables (non-fatal): {e}")

        scheduler = None
        if settings.scheduler_enabled:
            scheduler = create_scheduler(services)
            scheduler.start()
            logger.info(
                f"[SCHEDULER] Started maintenance scheduler "
                f"(stale cleanup every minute, sweeps every {settings.sweep_interval_minutes} minutes)"
            )

        await asyncio.sleep(0)
        yield

        if scheduler is not None:
            scheduler.shutdown()
            logger.info("[SCHEDULER] Stopped maintenance scheduler")
        services.close()

    app = FastAPI(title="aiwatch", version=settings.app_version, lifespan=lifespan)
    app.state.services = services

    app.include_router(health_router)
    app.include_router(metrics_router)

    # Last registered runs first: HTTP metrics wrap rate-limit rejections too
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(http_metrics_middleware)

    logger.info("FastAPI application initialized")
    return app


def create_default_app() -> FastAPI:
    """Uvicorn factory entry point (aiwatch.main:create_default_app)."""
    settings = Settings()
    setup_logger(level=settings.log_level, log_file=settings.log_file)
    return create_app(settings)
