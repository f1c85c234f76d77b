"""Configuration management"""

from .app_config import (
    AppConfig,
    ArchiveConfig,
    ImapConfig,
    LoggingConfig,
    ResilienceConfig,
    SyncConfig,
    TelemetryConfig,
)
from .config_loader import PASSWORD_ENV_VAR, ConfigError, ConfigLoader

__all__ = [
    "AppConfig",
    "ArchiveConfig",
    "ImapConfig",
    "LoggingConfig",
    "ResilienceConfig",
    "SyncConfig",
    "TelemetryConfig",
    "PASSWORD_ENV_VAR",
    "ConfigError",
    "ConfigLoader",
]
