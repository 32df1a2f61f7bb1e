"""Berth FastAPI application.

Thin adapter over the service graph: HTTP for health and ports, a
WebSocket for the session protocol.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from berth.api import health, ws
from berth.api.v1 import router as v1_router
from berth.config import Settings, get_settings
from berth.errors import BerthError
from berth.log import configure_logging
from berth.services import Services, build_services

logger = structlog.get_logger()


def create_app(settings: Settings | None = None, *, services: Services | None = None) -> FastAPI:
    """Create the application.

    Args:
        settings: Defaults to get_settings()
        services: Pre-wired services (tests); built from settings otherwise
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.logging.level, json_logs=settings.logging.json_logs)
        if app.state.services is None:
            app.state.services = build_services(settings)

        await app.state.services.startup()
        logger.info("berth.ready", host=settings.server.host, port=settings.server.port)
        try:
            yield
        finally:
            await app.state.services.shutdown()

    app = FastAPI(title="Berth", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    @app.exception_handler(BerthError)
    async def berth_error_handler(request: Request, exc: BerthError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    app.include_router(health.router, tags=["health"])
    app.include_router(v1_router, prefix="/v1")
    app.include_router(ws.router)
    return app
