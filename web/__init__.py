"""FastAPI web application for sdflasher.

This module provides the HTTP API that mirrors the core services.

All business logic is delegated to core modules in sdflasher/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
