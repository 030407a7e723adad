"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Delivery runs in the arq worker (see backend/app/worker.py) unless
ALERT_SYNC_PROCESSING is enabled, in which case it runs in-request.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus

# ── Pipeline + routers ──
from backend.app.alerts.container import PipelineContainer, build_container
from backend.app.api.v1.alerts import router as alert_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    container: Optional[PipelineContainer] = None,
) -> FastAPI:
    """Build the application; tests pass their own settings or container."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            app_settings.APP_NAME, app_settings.APP_VERSION, app_settings.ENVIRONMENT,
        )
        pipeline = container or build_container(app_settings)
        await pipeline.startup()
        app.state.container = pipeline
        yield
        logger.info("Shutting down %s", app_settings.APP_NAME)
        await pipeline.shutdown()

    app = FastAPI(
        title=app_settings.APP_NAME,
        description=(
            "Alert broadcast and delivery pipeline. Administrators author an "
            "alert once; a background worker resolves the audience and "
            "delivers it as batched push notifications and in-app "
            "notification records, with retries, token eviction and a "
            "dead-letter queue."
        ),
        version=app_settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS if not app_settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)
    app.include_router(alert_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": app_settings.APP_NAME,
            "version": app_settings.APP_VERSION,
            "environment": app_settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — store, queue and push provider."""
        report = await app.state.container.healthcheck()
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        report = await app.state.container.healthcheck()
        if report.status is HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
