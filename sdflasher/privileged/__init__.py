"""Privileged execution capability and its process-scoped session."""

from sdflasher.privileged.session import (
    SessionNotInitializedError,
    close_session,
    get_session,
    init_session,
)
from sdflasher.privileged.shell import CommandResult, LocalShell, PrivilegedShell

__all__ = [
    "CommandResult",
    "LocalShell",
    "PrivilegedShell",
    "SessionNotInitializedError",
    "close_session",
    "get_session",
    "init_session",
]
