"""Cached settings accessor and logging setup.

Usage:
    from docintake.core.settings import get_settings

    settings = get_settings()
    threshold = settings.pipeline.acceptance_threshold

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache(). Services never call get_settings() themselves;
they receive the values they need at construction.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from docintake.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


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
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)

        logger.info(
            "Configuration loaded: environment=%s, acceptance_threshold=%d, "
            "audit_batch_size=%d, policy_hash=%s",
            settings.environment.value,
            settings.pipeline.acceptance_threshold,
            settings.audit.batch_size,
            settings.get_policy_hash()[:16] + "...",
        )

        return settings

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


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Example:
        def test_something(monkeypatch):
            clear_settings_cache()
            monkeypatch.setenv("DOCINTAKE_ENVIRONMENT", "staging")
            settings = get_settings()
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def get_settings_safe() -> Settings | None:
    """Get settings, returning None instead of exiting when they are invalid."""
    try:
        return get_settings()
    except SystemExit:
        return None


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.

    Args:
        settings: Settings carrying the log level.
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    # boto3 is chatty at DEBUG and would log request signing details
    logging.getLogger("botocore").setLevel(
        max(logging.INFO, logging.getLevelName(settings.log_level))
    )
    logger.debug("Logging configured at level %s", settings.log_level)
