from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from loyalty_engine import __version__ as APP_VERSION
from loyalty_engine.core.settings import settings
from loyalty_engine.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import PointExpirationWorker


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    expiration_worker = PointExpirationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.expiration_worker_interval_seconds,
    )
    app.state.expiration_worker = expiration_worker

    expiration_enabled = settings.expiration_worker_enabled
    if expiration_enabled:
        expiration_worker.start()
        logger.info(
            "Point expiration worker enabled",
            interval_seconds=expiration_worker.interval_seconds,
        )
    else:
        logger.info(
            "Point expiration worker disabled",
            reason="expiration_worker_enabled is false",
        )

    try:
        yield
    finally:
        if expiration_enabled and expiration_worker.is_running:
            await expiration_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the loyalty engine service."""
    configure_logging(
        service_name="loyalty-engine",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Loyalty Engine API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="loyalty-engine",
        service_version=APP_VERSION,
        environment=settings.environment,
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
