"""FastAPI application factory for the UCP commerce server."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import UCPSettings, load_settings
from .dependencies import ServiceContainer, build_container
from .middleware import RequestIdMiddleware, register_exception_handlers, setup_logging
from .routers import admin, checkout_sessions, health, mcp, metrics, profile, registration, webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: ServiceContainer = app.state.container
    settings = container.settings
    logger.info(
        f"Starting UCP commerce server: version={__version__}, ucp_version={settings.ucp_version}, "
        f"env={settings.environment}, server_url={settings.server_url}"
    )
    if settings.webhooks.sweep_enabled:
        await container.webhooks.start()
    try:
        yield
    finally:
        logger.info("Shutting down UCP commerce server")
        await container.close()


def create_app(
    settings: Optional[UCPSettings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    if container is not None:
        settings = container.settings
    settings = settings or load_settings()
    setup_logging(json_format=settings.json_logs, level=settings.log_level)
    container = container or build_container(settings)

    app = FastAPI(
        title="UCP Commerce Server",
        description="Universal Commerce Protocol checkout, MCP and order webhooks",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials="*" not in settings.allowed_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "X-Request-ID",
            "X-Shop-ID",
            "X-UCP-Profile",
            "UCP-Agent",
        ],
    )
    register_exception_handlers(app)

    app.include_router(profile.router)
    app.include_router(checkout_sessions.router)
    app.include_router(mcp.router)
    app.include_router(webhooks.router)
    app.include_router(registration.router)
    app.include_router(admin.router)
    app.include_router(health.router)
    app.include_router(metrics.router)

    return app
