"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
the process-scoped state the routes share:
- session_factory: flash history database
- shell: privileged shell session
- orchestrator: the single flash orchestrator (one attempt at a time)

Web routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sdflasher import __version__
from sdflasher.config import get_settings
from sdflasher.db import create_all_tables, get_engine, get_session_factory
from sdflasher.flash.orchestrator import FlashOrchestrator
from sdflasher.logging_config import configure_logging
from sdflasher.privileged.session import close_session, init_session
from web.routers import config, devices, flash, health


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables and the privileged session on startup,
    cancels any running flash and closes the session on shutdown.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    app.state.session_factory = get_session_factory(engine)

    shell = init_session(settings)
    app.state.settings = settings
    app.state.shell = shell
    app.state.orchestrator = FlashOrchestrator(shell, settings)
    app.state.flash_handle = None
    try:
        yield
    finally:
        app.state.orchestrator.cancel()
        app.state.orchestrator.wait(timeout=10)
        close_session()
        engine.dispose()


def include_routers(application: FastAPI) -> None:
    """Mount every API router on an application."""
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(devices.router, prefix="/devices", tags=["devices"])
    application.include_router(flash.router, prefix="/flash", tags=["flash"])


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="SD Flasher API",
        description="HTTP API for listing removable devices and flashing "
        "compressed disk images to them",
        version=__version__,
        lifespan=lifespan,
    )
    include_routers(application)
    return application


# Create the default application instance
app = create_app()
