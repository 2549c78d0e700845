"""Logging configuration for Cogitap."""

import logging
import os
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


def _log_dir() -> Path:
    """Logs live under the configured general.data_dir."""
    from cogitap.config.schema import default_data_dir

    try:
        from cogitap.core.config import config_manager
    except ImportError:
        return default_data_dir() / "logs"

    return Path(config_manager.get("general.data_dir", default_data_dir())) / "logs"


def setup_logger(name: str, level: str = None) -> logging.Logger:
    """Set up a logger with Rich formatting.

    Args:
        name: Logger name (usually __name__)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if level is None:
        level = get_current_log_level()

    level = str(level).upper()
    numeric_level = getattr(logging, level, logging.INFO)

    logger.setLevel(numeric_level)

    if logger.handlers:
        for handler in logger.handlers:
            if isinstance(handler, RichHandler):
                handler.setLevel(numeric_level)
        return logger

    show_locals = numeric_level <= logging.DEBUG
    console_handler = RichHandler(
        console=Console(stderr=True), rich_tracebacks=True, tracebacks_show_locals=show_locals
    )
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    log_dir = _log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"cogitap_{datetime.now():%Y%m%d}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)  # file always gets everything
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    logger.addHandler(file_handler)

    # Records are handled here; keep them away from the root logger.
    logger.propagate = False

    return logger


def update_log_level(level: str):
    """Update log level for all existing Cogitap loggers.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        if logger_name.startswith("cogitap."):
            logger = logging.getLogger(logger_name)
            logger.setLevel(numeric_level)

            for handler in logger.handlers:
                if isinstance(handler, RichHandler):
                    handler.setLevel(numeric_level)


def get_current_log_level() -> str:
    """Resolve the log level from the environment, then configuration.

    Returns:
        Current log level as string
    """
    env_level = os.getenv("COGITAP_LOG_LEVEL")
    if env_level:
        return env_level

    try:
        from cogitap.core.config import config_manager
    except ImportError:
        return "INFO"

    level = config_manager.get("general.log_level", "INFO")
    if hasattr(level, "value"):
        return level.value
    return str(level)
