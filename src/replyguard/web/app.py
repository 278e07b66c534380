"""FastAPI application factory: mounts the API routes and, optionally, the scheduler."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from replyguard import __version__
from replyguard.config import Config, load_config
from replyguard.logconfig import configure_logging


def create_app(config: Config | None = None) -> FastAPI:
    """Build the FastAPI application."""
    config = config or load_config()
    configure_logging(config.logging)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if config.scheduler.run_in_web:
            from replyguard.scheduler import ReplyScheduler

            scheduler = ReplyScheduler(config)
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown()

    app = FastAPI(title="ReplyGuard Admin", version=__version__, lifespan=lifespan)

    # Import and mount API router
    from replyguard.web.api import router as api_router
    app.include_router(api_router, prefix="/api")

    @app.get("/")
    async def _root():
        return RedirectResponse(url="/docs")

    return app
