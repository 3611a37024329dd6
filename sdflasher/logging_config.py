"""Logging setup for the sdflasher frontends.

Library modules only create module loggers; handlers are installed once by
the entry point (CLI, web app) through configure_logging.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Install a Rich log handler on the root logger.

    Logs go to stderr so that --json output on stdout stays parseable.

    Args:
        level: Logging level name (e.g. 'INFO', 'DEBUG').
        console: Optional Rich console to render to.
    """
    if console is None:
        console = Console(stderr=True)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False)],
        force=True,
    )


__all__ = ["configure_logging"]
