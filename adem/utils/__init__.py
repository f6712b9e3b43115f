"""
Logging helpers shared by every module.

Usage:
    from adem.utils import get_logger

    log = get_logger(__name__)
"""
import logging
import logging.config
from typing import Any, Dict

from adem.core import config


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig used by configure_logging()."""
    level = config.LOG_LEVEL.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "simple": {
                "format": "{asctime} {levelname} {name} {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "simple",
                "level": level,
            },
        },
        "loggers": {
            "adem": {"handlers": ["console"], "level": level, "propagate": False},
            "scripts": {"handlers": ["console"], "level": level, "propagate": False},
            "server": {"handlers": ["console"], "level": level, "propagate": False},
        },
    }


def configure_logging() -> None:
    """Install the console handler for the application loggers."""
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
