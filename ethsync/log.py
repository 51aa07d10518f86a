"""Logging setup for the command-line interface."""

import logging

from rich.console import Console
from rich.logging import RichHandler

from ethsync.config import settings


def setup_logging(level: str | None = None, console: Console | None = None) -> None:
    """Route all log records through a rich console handler."""
    handler = RichHandler(
        console=console,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
