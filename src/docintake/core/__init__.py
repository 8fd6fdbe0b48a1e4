"""Core module.

Shared components used across all services:
- Configuration management
- Logging setup
"""

from docintake.core.config import (
    AlertingSettings,
    AuditSettings,
    ConfigValidationError,
    CryptoSettings,
    DatabaseSettings,
    Environment,
    EventBusSettings,
    PipelineSettings,
    S3Settings,
    Settings,
)
from docintake.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "AlertingSettings",
    "AuditSettings",
    "ConfigValidationError",
    "CryptoSettings",
    "DatabaseSettings",
    "Environment",
    "EventBusSettings",
    "PipelineSettings",
    "S3Settings",
    "Settings",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
    "get_settings_safe",
]
