"""Logging configuration for crystaldag entry points."""

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(
    level: Union[int, str] = logging.INFO,
    use_rich: bool = True,
    console: Optional[Console] = None,
) -> logging.Logger:
    """
    Attach a handler to the ``crystaldag`` logger.

    Library modules only create loggers; handlers are installed here, once,
    by whatever process embeds the engine (the CLI does it at startup).
    Calling this again replaces the previously installed handler.

    Args:
        level: Logging level name or number
        use_rich: Use a rich console handler instead of a plain stream handler
        console: Console for the rich handler (defaults to stderr)

    Returns:
        The configured package logger
    """
    package_logger = logging.getLogger("crystaldag")

    for handler in list(package_logger.handlers):
        if getattr(handler, "_crystaldag", False):
            package_logger.removeHandler(handler)

    if use_rich:
        handler: logging.Handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    handler._crystaldag = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
    package_logger.setLevel(level if isinstance(level, int) else level.upper())
    return package_logger
