"""Verbete core module.

Shared components used across all services:
- Configuration management
- Error taxonomy
"""

from verbete.core.config import (
    AlertSettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    SchedulerSettings,
    Settings,
    SMTPSettings,
    SubmissionSettings,
    TokenSettings,
)
from verbete.core.settings import clear_settings_cache, get_settings

__all__ = [
    "AlertSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "SMTPSettings",
    "SchedulerSettings",
    "Settings",
    "SubmissionSettings",
    "TokenSettings",
    "clear_settings_cache",
    "get_settings",
]
