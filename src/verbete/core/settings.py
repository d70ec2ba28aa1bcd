"""Singleton settings accessor.

Usage:
    from verbete.core.settings import get_settings

    settings = get_settings()
    thresholds = settings.alerts.thresholds

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from verbete.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached application settings.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded or fail validation.
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings()
        validate_settings(settings)
    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e

    logger.info(
        "Configuration loaded: environment=%s, timezone=%s, token_days=%d",
        settings.environment.value,
        settings.scheduler.timezone,
        settings.tokens.default_expiry_days,
    )
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call reloads from the environment."""
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")
