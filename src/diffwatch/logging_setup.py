"""Loguru logging setup for diffwatch.

Library modules log through ``from loguru import logger`` and never configure
handlers themselves. Applications (or the CLI) call ``setup_logging`` once.

Usage:
    from diffwatch.logging_setup import setup_logging, get_logger

    setup_logging(level="DEBUG")
    logger = get_logger(__name__, session_id="abc123")
    logger.info("Watching")
"""

import sys
from pathlib import Path
from typing import Any

from loguru import logger

from .config import LoggingConfig

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)


def setup_logging(
    level: str = "INFO",
    console: bool = True,
    log_dir: Path | str | None = None,
    serialize_file: bool = True,
    diagnose_file: bool = False,
) -> None:
    """Configure loguru with a console handler and an optional file handler.

    Uses ``enqueue=True`` because watchdog callbacks and git worker threads
    log concurrently with the event loop.

    Args:
        level: Minimum level for all handlers.
        console: Enable the stderr handler.
        log_dir: Directory for ``diffwatch.log``; None disables file output.
        serialize_file: Write JSON records to the file handler.
        diagnose_file: Show variable values in file tracebacks.
    """
    logger.remove()

    if console:
        logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT,
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=True,
            enqueue=True,
        )

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_dir / "diffwatch.log"),
            level=level,
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            compression="gz",
            serialize=serialize_file,
            enqueue=True,
            backtrace=True,
            diagnose=diagnose_file,
        )


def setup_logging_from_config(config: LoggingConfig, console: bool = True) -> None:
    """Configure logging from the ``logging`` settings section."""
    setup_logging(
        level=config.level,
        console=console,
        log_dir=config.log_dir,
        serialize_file=config.serialize_file,
    )


def get_logger(name: str, **context: Any) -> "logger":
    """Get a context-bound logger.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to bind to all log messages

    Returns:
        Logger instance with bound context
    """
    return logger.bind(name=name, **context)
