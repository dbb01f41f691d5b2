"""Logger capability: one configured root, child loggers per agent and module."""
from __future__ import annotations

import logging
import logging.config

ROOT_LOGGER = "contentops"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO", fmt: str = DEFAULT_FORMAT) -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": fmt}},
            "handlers": {
                "console": {"class": "logging.StreamHandler", "formatter": "default"},
            },
            "loggers": {
                ROOT_LOGGER: {"level": level.upper(), "handlers": ["console"], "propagate": True},
            },
        }
    )


class LoggerFactory:
    """Hands out loggers below the ``contentops`` namespace."""

    def __init__(self, level: str = "INFO", fmt: str = DEFAULT_FORMAT, *, configure: bool = True) -> None:
        if configure:
            configure_logging(level, fmt)

    def get(self, name: str) -> logging.Logger:
        if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
            return logging.getLogger(name)
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
