"""Logging setup shared by the CLI entry points."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(
    log_file: Optional[Path] = None,
    verbose: bool = False,
    console_output: bool = True,
) -> logging.Logger:
    """Configure the ``maestro`` logger.

    ``console_output`` is turned off for full-screen modes, where anything
    written to the terminal would tear the rendered dashboard.
    """
    logger = logging.getLogger("maestro")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console_output:
        rich_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        rich_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        logger.addHandler(rich_handler)

    if log_file is not None and log_file.parent.is_dir():
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger
