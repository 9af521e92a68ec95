"""
Runtime configuration: which database the cellar records live in.

Three environments are recognised:
- production: ~/.press_tracker/press_tracker.db
- development: <checkout>/data/press_tracker.db
- test: an in-memory SQLite database

PRESS_TRACKER_DATABASE_URL, when set, wins over all of them.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .constants import DATABASE_FILENAME

logger = logging.getLogger(__name__)

ENV_VAR_ENVIRONMENT = "PRESS_TRACKER_ENV"
ENV_VAR_DATABASE_URL = "PRESS_TRACKER_DATABASE_URL"

ENVIRONMENTS = ("production", "development", "test")
IN_MEMORY_URL = "sqlite:///:memory:"


class Config:
    """Resolved database location for one environment."""

    def __init__(self, environment: str = "production", database_url: Optional[str] = None):
        if environment not in ENVIRONMENTS:
            raise ValueError(
                f"Unknown environment '{environment}', expected one of {', '.join(ENVIRONMENTS)}"
            )
        self.environment = environment
        self._url_override = database_url or os.environ.get(ENV_VAR_DATABASE_URL)
        self._database_path = self._resolve_database_path()

        if self._database_path is not None and self._url_override is None:
            self._database_path.parent.mkdir(parents=True, exist_ok=True)

    def _resolve_database_path(self) -> Optional[Path]:
        if self.environment == "test":
            return None
        if self.environment == "development":
            return self._get_project_data_dir() / DATABASE_FILENAME
        return Path.home() / ".press_tracker" / DATABASE_FILENAME

    def _get_project_data_dir(self) -> Path:
        # src/press_tracker/utils/config.py -> checkout root
        return Path(__file__).resolve().parents[3] / "data"

    @property
    def database_path(self) -> Optional[Path]:
        """SQLite file backing the default URL; None in test mode."""
        return self._database_path

    @property
    def database_url(self) -> str:
        if self._url_override:
            return self._url_override
        if self._database_path is None:
            return IN_MEMORY_URL
        return "sqlite:///" + self._database_path.as_posix()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def database_exists(self) -> bool:
        """
        True when there is nothing to create up front.

        An explicit URL or an in-memory database counts as existing; only the
        default SQLite file is checked on disk.
        """
        if self._url_override or self._database_path is None:
            return True
        return self._database_path.exists()

    def __repr__(self) -> str:
        return f"Config(environment={self.environment!r}, database_url={self.database_url!r})"


_config: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Return the process-wide Config, creating it on first use.

    The first call fixes the environment (argument, then PRESS_TRACKER_ENV,
    then production). Later calls asking for another environment get the
    existing instance and a warning; the database never switches mid-process.
    """
    global _config

    if _config is None:
        _config = Config(environment or os.environ.get(ENV_VAR_ENVIRONMENT, "production"))
    elif environment and environment != _config.environment:
        logger.warning(
            "Config already initialised for %r; ignoring request for %r",
            _config.environment,
            environment,
        )
    return _config


def reset_config():
    """Forget the process-wide Config (tests)."""
    global _config
    _config = None
