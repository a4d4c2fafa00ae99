"""
Configuration management for the Lot Tracker application.

This module handles:
- Database path configuration
- Environment-specific configuration (development vs. production)
- Rework monitoring settings (overdue threshold, scan interval)
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .constants import (
    APP_NAME,
    APP_VERSION,
    DATABASE_FILENAME,
    DATABASE_VERSION,
    DEFAULT_MONITOR_INTERVAL_SECONDS,
    DEFAULT_OVERDUE_REWORK_DAYS,
)

logger = logging.getLogger(__name__)

ENV_ENVIRONMENT = "LOT_TRACKER_ENV"
ENV_DATABASE_URL = "LOT_TRACKER_DATABASE_URL"
ENV_OVERDUE_DAYS = "LOT_TRACKER_OVERDUE_DAYS"
ENV_MONITOR_INTERVAL = "LOT_TRACKER_MONITOR_INTERVAL"


def _int_from_env(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back on bad input."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not an integer, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring {name}={raw!r}: must be positive, using {default}")
        return default
    return value


class Config:
    """
    Application configuration manager.

    Handles all configuration settings including database paths,
    environment settings, and rework monitoring parameters.
    """

    def __init__(self, environment: str = "production"):
        """
        Initialize configuration.

        Args:
            environment: Environment mode - 'production' or 'development'
        """
        self.environment = environment
        self._app_name = APP_NAME
        self._app_version = APP_VERSION
        self._database_version = DATABASE_VERSION

        if environment == "development":
            self._base_dir = self._get_project_data_dir()
        else:
            self._base_dir = self._get_user_data_dir()

        self._database_dir = self._base_dir
        self._database_path = self._database_dir / DATABASE_FILENAME
        self._database_url_override = os.environ.get(ENV_DATABASE_URL)

        self._overdue_rework_days = _int_from_env(ENV_OVERDUE_DAYS, DEFAULT_OVERDUE_REWORK_DAYS)
        self._monitor_interval = _int_from_env(
            ENV_MONITOR_INTERVAL, DEFAULT_MONITOR_INTERVAL_SECONDS
        )

    def _get_project_data_dir(self) -> Path:
        """
        Get the project's data directory for development.

        Returns:
            Path to project data/ directory
        """
        project_root = Path(__file__).parent.parent.parent.parent
        return project_root / "data"

    def _get_user_data_dir(self) -> Path:
        """
        Get the per-user data directory for production.

        Returns:
            Path to ~/.lot_tracker
        """
        return Path.home() / ".lot_tracker"

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        if self._database_url_override is None:
            self._database_dir.mkdir(parents=True, exist_ok=True)

    @property
    def app_name(self) -> str:
        """Application name."""
        return self._app_name

    @property
    def app_version(self) -> str:
        """Application version."""
        return self._app_version

    @property
    def database_version(self) -> str:
        """Database schema version."""
        return self._database_version

    @property
    def database_path(self) -> Path:
        """Full path to the database file."""
        return self._database_path

    @property
    def database_url(self) -> str:
        """
        SQLAlchemy database URL.

        LOT_TRACKER_DATABASE_URL takes precedence over the file-based default.

        Returns:
            Database URL string for SQLAlchemy
        """
        if self._database_url_override:
            return self._database_url_override
        db_path_str = str(self._database_path).replace("\\", "/")
        return f"sqlite:///{db_path_str}"

    @property
    def overdue_rework_days(self) -> int:
        """Days a unit may stay held in rework before a reminder is sent."""
        return self._overdue_rework_days

    @property
    def monitor_interval(self) -> int:
        """Seconds between overdue rework scans."""
        return self._monitor_interval

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def database_exists(self) -> bool:
        """
        Check if database file exists.

        Returns:
            True if database file exists, False otherwise
        """
        return self._database_path.exists()

    def __repr__(self) -> str:
        """String representation of config."""
        return f"Config(environment='{self.environment}', database_url='{self.database_url}')"


_config_instance: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Once created, the singleton's environment cannot be changed by passing
    a different environment argument - this prevents accidental database
    switching mid-session.

    Args:
        environment: Optional environment for initial creation. If None, uses
                    LOT_TRACKER_ENV or defaults to production. Ignored if
                    singleton already exists.

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        if environment is None:
            environment = os.environ.get(ENV_ENVIRONMENT, "production")
        _config_instance = Config(environment)
    elif environment is not None and environment != _config_instance.environment:
        logger.warning(
            f"get_config() called with environment='{environment}' but singleton "
            f"already exists with environment='{_config_instance.environment}'. "
            f"Returning existing singleton to prevent database switching."
        )

    return _config_instance


def reset_config():
    """
    Reset the global configuration instance.

    Useful for testing.
    """
    global _config_instance
    _config_instance = None


def get_database_url() -> str:
    """
    Get the database URL.

    Returns:
        SQLAlchemy database URL string
    """
    return get_config().database_url
