"""Shared dependencies for FastAPI routes.

Provides the database session, settings, privileged shell and flash
orchestrator to route handlers via FastAPI dependency injection.

Transaction boundaries for the database session are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from sdflasher.config import Settings
from sdflasher.flash.orchestrator import FlashOrchestrator
from sdflasher.privileged.shell import PrivilegedShell


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings(request: Request) -> Settings:
    """Settings the application was started with."""
    settings: Any = request.app.state.settings
    return settings  # type: ignore[no-any-return]


def get_shell(request: Request) -> PrivilegedShell:
    """Privileged shell session of the application."""
    shell: Any = request.app.state.shell
    return shell  # type: ignore[no-any-return]


def get_orchestrator(request: Request) -> FlashOrchestrator:
    """The application's single flash orchestrator."""
    orchestrator: Any = request.app.state.orchestrator
    return orchestrator  # type: ignore[no-any-return]
