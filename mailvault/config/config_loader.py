"""Configuration loader for application settings."""

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .app_config import AppConfig

PASSWORD_ENV_VAR = "MAILVAULT_PASSWORD"


class ConfigError(Exception):
    """Configuration file is unreadable or holds invalid values."""
    pass


class ConfigLoader:
    """Load and validate application configuration."""

    DEFAULT_CONFIG_PATHS = [
        Path("~/.mailvault/config.json"),
        Path("config/mailvault.json"),
    ]

    def __init__(self, config_path: Optional[Path] = None, environ: Optional[dict] = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Optional custom config file path
            environ: Environment mapping (defaults to os.environ)
        """
        self.config_path = config_path
        self.environ = os.environ if environ is None else environ
        self._config: Optional[AppConfig] = None

    def load_app_config(self) -> AppConfig:
        """
        Load application configuration from file.

        Returns:
            AppConfig instance (defaults if no file is found)

        Raises:
            ConfigError: If an explicit config file is missing, or any file
                holds invalid JSON or values
        """
        if self._config is not None:
            return self._config

        if self.config_path is not None and not self.config_path.expanduser().exists():
            raise ConfigError(f"Config file not found: {self.config_path}")

        config_paths = [self.config_path] if self.config_path else self.DEFAULT_CONFIG_PATHS

        config = None
        for config_path in config_paths:
            if config_path.expanduser().exists():
                config = self._read(config_path.expanduser())
                break

        # Return default config if no file found
        if config is None:
            config = AppConfig()

        password = self.environ.get(PASSWORD_ENV_VAR)
        if password and not config.imap.password:
            config.imap.password = password

        self._config = config
        return self._config

    def reload(self) -> AppConfig:
        """Reload configuration from file."""
        self._config = None
        return self.load_app_config()

    def _read(self, config_path: Path) -> AppConfig:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigError(f"Invalid config in {config_path}: top level must be an object")

        try:
            return AppConfig(**config_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {config_path}: {e}") from e
