"""Process-scoped privileged shell session.

Frontends call init_session() once at startup, hand get_session() to the
components that need privileged access, and call close_session() on
shutdown. Core modules never reach for this state themselves; they receive
a shell explicitly.
"""

import logging
import threading

from sdflasher.config import Settings, get_settings
from sdflasher.privileged.shell import LocalShell, PrivilegedShell

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_session: PrivilegedShell | None = None


class SessionNotInitializedError(Exception):
    """get_session() was called before init_session()."""

    def __init__(self) -> None:
        super().__init__("Privileged session not initialized")
        self.message = "Privileged session not initialized"
        self.error_code = "SESSION_NOT_INITIALIZED"


def init_session(
    settings: Settings | None = None,
    shell: PrivilegedShell | None = None,
) -> PrivilegedShell:
    """Initialize the process-wide privileged shell.

    Calling it again returns the existing session unchanged.

    Args:
        settings: Application settings (used to build a LocalShell).
        shell: Explicit shell implementation to install instead.

    Returns:
        The active privileged shell.
    """
    global _session

    with _lock:
        if _session is not None:
            return _session

        if shell is None:
            if settings is None:
                settings = get_settings()
            shell = LocalShell(
                use_sudo=settings.use_sudo, timeout=settings.command_timeout
            )

        _session = shell
        logger.debug(
            "Privileged session initialized (%s, privileged=%s)",
            type(shell).__name__,
            shell.is_privileged(),
        )
        return _session


def get_session() -> PrivilegedShell:
    """Return the active privileged shell.

    Raises:
        SessionNotInitializedError: init_session() has not been called.
    """
    if _session is None:
        raise SessionNotInitializedError()
    return _session


def close_session() -> None:
    """Tear down the process-wide privileged shell."""
    global _session

    with _lock:
        if _session is not None:
            close = getattr(_session, "close", None)
            if callable(close):
                close()
            logger.debug("Privileged session closed")
        _session = None


__all__ = [
    "SessionNotInitializedError",
    "close_session",
    "get_session",
    "init_session",
]
