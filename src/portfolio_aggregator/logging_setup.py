"""Logging configuration."""

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: int | str = logging.INFO, console: Console | None = None) -> None:
    """
    Route all package logging through a rich handler.

    Parameters
    ----------
    level : int | str
        Level for the ``portfolio_aggregator`` loggers
    console : Console | None
        Console to log to. Logs go to stderr if None.

    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    package_logger = logging.getLogger("portfolio_aggregator")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
