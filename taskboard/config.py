"""Runtime settings, read from the environment.

``TASKBOARD_DATABASE_URL`` (or ``DATABASE_URL``) selects the SQLAlchemy
database, ``TASKBOARD_LOG_LEVEL`` the root log level and
``TASKBOARD_SERIALIZE_MOVES`` whether position changes on one container are
serialized inside the process.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./taskboard.db"


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    serialize_moves: bool = True
    activity_page_size: int = Field(default=50, gt=0, le=500)

    @field_validator("database_url")
    @classmethod
    def database_url_must_be_non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("database_url must be a non-empty string")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {v!r}")
        return level


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings(
            database_url=_env("TASKBOARD_DATABASE_URL") or _env("DATABASE_URL") or DEFAULT_DATABASE_URL,
            log_level=_env("TASKBOARD_LOG_LEVEL", "INFO"),
            serialize_moves=_flag(_env("TASKBOARD_SERIALIZE_MOVES"), True),
            activity_page_size=int(_env("TASKBOARD_ACTIVITY_PAGE_SIZE", "50")),
        )
    except (ValidationError, ValueError) as e:
        logger.error("Invalid taskboard configuration: %s", e)
        raise
