"""Logging with rich console output.

Usage:
    from repolens.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Analyzing %s", repo_id)
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

# Shared console so log lines and CLI output interleave cleanly
console = Console(stderr=True)


def _rich_handler() -> RichHandler:
    handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a module.

    No handlers are attached here; records propagate to the root logger
    configured by `setup_logging`, which keeps pytest's caplog working.
    """
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(level.upper())
    return logger


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Configure the root logger once, at the CLI entry point.

    Args:
        level: Default logging level for all modules
        log_file: Optional file path to also log to a file
    """
    level = os.getenv("LOG_LEVEL", level).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(_rich_handler())

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
