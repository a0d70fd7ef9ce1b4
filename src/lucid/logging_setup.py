"""Logging setup for the lucid scheduler and CLI."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)-18s] %(message)s"
CLI_FORMAT = "%(levelname)-5s [%(name)-18s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")

_initialized = False


def _file_handler(log_config: LoggingConfig) -> logging.Handler:
    file_path = Path(log_config.file)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if not log_config.rotate:
        return logging.FileHandler(file_path)
    return RotatingFileHandler(
        file_path,
        maxBytes=log_config.max_size_mb * 1024 * 1024,
        backupCount=log_config.backup_count,
    )


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> None:
    """
    Configure the ``lucid`` logger namespace.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config level to DEBUG
        daemon_mode: If True, include timestamps in console output
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level_name = "DEBUG" if verbose else log_config.level.upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger("lucid")
    root.setLevel(level)
    root.handlers.clear()

    handlers: list[logging.Handler] = []
    if log_config.output in ("console", "both"):
        console = logging.StreamHandler(sys.stderr)
        if daemon_mode:
            console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        else:
            console.setFormatter(logging.Formatter(CLI_FORMAT))
        handlers.append(console)

    if log_config.output in ("file", "both") and log_config.file:
        file_handler = _file_handler(log_config)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Reset logging state for testing purposes."""
    global _initialized
    _initialized = False
    logging.getLogger("lucid").handlers.clear()
