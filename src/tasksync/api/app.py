"""Sync API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the DB pool, ensures the schema and builds
  the service graph (skipped when services are injected)
- Health endpoint at GET /api/health
- Sync and OAuth routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tasksync import __version__
from tasksync.api.middleware import register_error_handlers
from tasksync.api.models import HealthResponse
from tasksync.api.routers.oauth import router as oauth_router
from tasksync.api.routers.sync import router as sync_router
from tasksync.config import AppConfig, load_config
from tasksync.services import SyncServices, open_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the pool and build services unless they were injected."""
    if getattr(app.state, "services", None) is not None:
        yield
        return

    config: AppConfig = app.state.config
    async with open_services(config) as services:
        app.state.services = services
        logger.info("Sync services initialized")
        yield
        app.state.services = None
    logger.info("Sync services shut down")


def create_app(
    config: AppConfig | None = None,
    *,
    services: SyncServices | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Application config.  Loaded via :func:`~tasksync.config.load_config`
        when omitted.
    services:
        Prebuilt services (tests).  When set, the lifespan handler does not
        touch the database.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:3000"]``.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:3000"]
    if config is None:
        config = services.config if services is not None else load_config()

    app = FastAPI(title="tasksync API", version=__version__, lifespan=lifespan)
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(version=__version__)

    app.include_router(sync_router)
    app.include_router(oauth_router)
    return app
