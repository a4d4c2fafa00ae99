"""Utilities package for the lot-tracker application."""

from .config import Config, get_config, reset_config
from .datetime_utils import iso_week_info, utc_now

__all__ = [
    "Config",
    "get_config",
    "reset_config",
    "iso_week_info",
    "utc_now",
]
