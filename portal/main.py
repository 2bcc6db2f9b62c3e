"""Entry point for the portal FastAPI application."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from portal.api.errors import setup_exception_handlers
from portal.api.middleware import APILoggingMiddleware
from portal.api.routers import queue as queue_routes
from portal.api.routers import watchlist as watchlist_routes
from portal.config import AppConfig
from portal.db import init_db
from portal.dependencies import get_app_config
from portal.logging import configure_logging, get_logger
from portal.logging_events import log_event
from portal.orchestrator.bootstrap import BackgroundRuntime

logger = get_logger(__name__)


def create_app(
    config: AppConfig | None = None,
    *,
    runtime: BackgroundRuntime | None = None,
) -> FastAPI:
    """Build the application.

    When ``runtime`` is given the lifespan uses it as-is instead of building
    one from ``config``; tests rely on this to inject fakes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app_config = config or get_app_config()
        configure_logging(app_config.logging.level)
        init_db()
        background = runtime or BackgroundRuntime.from_config(app_config)
        app.state.runtime = background
        if app_config.workers_enabled:
            await background.start()
        else:
            logger.info("Background workers disabled via PORTAL_DISABLE_WORKERS")
        log_event(
            logger,
            "app.startup",
            workers_enabled=app_config.workers_enabled,
            queue_configured=background.queue is not None,
        )
        try:
            yield
        finally:
            await background.close()
            log_event(logger, "app.shutdown")

    app = FastAPI(title="Portal", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime
    app.add_middleware(APILoggingMiddleware)
    setup_exception_handlers(app)
    app.include_router(queue_routes.router)
    app.include_router(watchlist_routes.router)
    app.include_router(watchlist_routes.admin_router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("portal.main:app", host="0.0.0.0", port=8080)


__all__ = ["app", "create_app", "main"]
