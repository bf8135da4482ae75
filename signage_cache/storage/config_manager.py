"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from signage_cache.exceptions import ConfigurationError
from signage_cache.models.config import CacheConfig

log = logging.getLogger(__name__)

_INT_KEYS = {
    "max_cache_bytes",
    "warning_cache_bytes",
    "min_free_bytes",
    "max_concurrent",
    "chunk_size",
    "hard_cap",
    "fast_retry_attempts",
}
_FLOAT_KEYS = {
    "eviction_fraction",
    "transfer_timeout_seconds",
    "progress_interval_seconds",
    "retry_interval_seconds",
    "cooldown_seconds",
}


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path, default_cache_dir: Path | None = None):
        self.config_file_path = config_file_path
        self.default_cache_dir = default_cache_dir or (
            config_file_path.parent / "media-cache"
        )
        self._parser = configparser.ConfigParser(interpolation=None)

    def _defaults(self) -> CacheConfig:
        return CacheConfig.model_construct(cache_dir=str(self.default_cache_dir))

    def load_config(self, cli_options: dict[str, Any] | None = None) -> CacheConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        A missing file is not an error: the kiosk runs on built-in defaults until
        an operator writes one with `init`.

        Raises:
            ConfigurationError: If the config file is invalid or validation fails.
        """
        config_from_file: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(
                    f"Error parsing configuration file: {e}"
                ) from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            config_from_file = self._get_config_as_dict()
        else:
            log.debug(f"No config file at '{self.config_file_path}', using defaults.")

        config_from_file.setdefault("cache_dir", str(self.default_cache_dir))

        if cli_options:
            config_from_file.update(cli_options)

        try:
            return CacheConfig(
                **config_from_file, config_path=str(self.config_file_path.parent)
            )
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """Creates and saves a new configuration file, filling in defaults."""
        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}
        defaults = self._defaults()

        for key in sorted(CacheConfig.get_ini_keys()):
            value = settings.get(key, getattr(defaults, key, None))
            if value is not None:
                config["DEFAULT"][key] = str(value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        values: dict[str, Any] = {}
        try:
            for key in CacheConfig.get_ini_keys():
                if key not in section:
                    continue
                if key in _INT_KEYS:
                    values[key] = section.getint(key)
                elif key in _FLOAT_KEYS:
                    values[key] = section.getfloat(key)
                else:
                    values[key] = section.get(key, "")
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e
        return values

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = self._defaults()
        needs_saving = False
        config_section = self._parser["DEFAULT"]

        for key in sorted(CacheConfig.get_ini_keys()):
            if key not in config_section:
                config_section[key] = str(getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving

    def as_display_dict(self) -> dict[str, Any]:
        """Raw key/value pairs from the config file, for `--show-config`."""
        self._parser.read(self.config_file_path, encoding="utf-8")
        return self._get_config_as_dict()
