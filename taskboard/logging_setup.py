"""Logging for the taskboard service.

Moves, inserts, deletes, reconcile passes and storage failures are logged
from ``taskboard.storage``, ``taskboard.containers`` and
``taskboard.positions`` through module loggers. The FastAPI lifespan and
the root ``main.py`` runner call ``configure_logging`` so those records and
uvicorn's access log share one stdout stream at ``TASKBOARD_LOG_LEVEL``.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig

from .config import get_settings


def _dict_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s:%(name)s:%(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.error": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
        },
    }


def configure_logging(level: str | None = None) -> None:
    """Configure logging once; a root logger that already has handlers is left alone."""
    root = logging.getLogger()
    if root.handlers:
        return
    dictConfig(_dict_config(level or get_settings().log_level))
