"""
Centralized logging configuration for the crop health service.
Every module asks for its logger here so the output format stays uniform.
"""

import logging
import os
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers are namespaced under the package so they can be silenced together
LOGGER_PREFIX = "crophealth"

_configured_loggers: set = set()


def _default_level() -> int:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get or create a namespaced logger with the standard format.

    Args:
        name: Short component name (e.g. 'scene_catalog')
        level: Optional level override; defaults to LOG_LEVEL from the environment

    Returns:
        Configured logger instance
    """
    full_name = f"{LOGGER_PREFIX}.{name}"
    logger = logging.getLogger(full_name)

    if full_name not in _configured_loggers:
        effective_level = level or _default_level()
        logger.setLevel(effective_level)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(effective_level)
            handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
            logger.addHandler(handler)

        # Our handler already writes; don't double-print through root
        logger.propagate = False

        _configured_loggers.add(full_name)

    return logger


def configure_root_logger(level: Optional[int] = None) -> None:
    """
    Configure the root logger for third-party libraries (uvicorn, httpx, sqlalchemy).
    Called once when the API module is imported.
    """
    effective_level = level or _default_level()
    root_logger = logging.getLogger()
    root_logger.setLevel(effective_level)

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(effective_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(handler)

    # httpx logs every request at INFO; keep provider chatter at WARNING
    logging.getLogger("httpx").setLevel(max(effective_level, logging.WARNING))
