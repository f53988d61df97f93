"""
Logging configuration and setup.

Console output goes through Rich; an optional plain-text file handler
captures everything at the configured level.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from chatloop.config import LoggingConfig

LOGGER_NAME = "chatloop"


def setup_logging(settings: LoggingConfig, console: Console | None = None) -> logging.Logger:
    """
    Configure the ``chatloop`` logger from *settings*.

    Safe to call more than once; existing handlers are replaced.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(console_handler)

    if settings.file:
        log_path = Path(settings.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug("Logging initialized - Level: %s", settings.level)
    return logger
