"""
Reads, validates and upgrades the queue's INI settings file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from qobuz_queue.exceptions import ConfigurationError
from qobuz_queue.models.config import QUALITY_MAP, QueueConfig

log = logging.getLogger(__name__)

# Internal quality codes back to the 1-4 scale users write in the file
API_TO_USER_QUALITY = {
    v: k for k, v in QUALITY_MAP.items() if isinstance(k, int) and k <= 4
}

_INT_KEYS = {
    "quality",
    "max_retries",
    "max_concurrent",
    "rate_limit_requests",
    "breaker_failure_threshold",
    "breaker_recovery_timeout",
}
_FLOAT_KEYS = {
    "retry_delay",
    "poll_interval",
    "flush_interval",
    "rate_limit_window",
    "rate_limit_block",
}


class ConfigManager:
    """Owns the single `[DEFAULT]` section of `config.ini`."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> QueueConfig:
        """
        Builds a `QueueConfig` from the file with command-line values layered on top.

        A missing file is not an error: defaults are used so the queue works
        out of the box.

        Args:
            cli_options: Values given on the command line; they win over the file.

        Returns:
            The validated settings.

        Raises:
            ConfigurationError: The file cannot be parsed or a value is rejected.
        """
        config_from_file: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path)
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

        # command line wins
        if cli_options:
            config_from_file.update(cli_options)

        try:
            config_dir = self.config_file_path.parent
            return QueueConfig(**config_from_file, config_path=str(config_dir))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Writes a fresh settings file, filling unspecified keys with defaults.

        Args:
            settings: Values chosen during `init`.
        """
        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}

        defaults = QueueConfig.model_construct()
        for key in sorted(QueueConfig.get_ini_keys()):
            value = settings.get(key, getattr(defaults, key, None))
            if value is not None:
                config["DEFAULT"][key] = self._to_ini_value(key, value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _to_ini_value(self, key: str, value: Any) -> str:
        if key == "quality":
            # stored on the user scale
            return str(API_TO_USER_QUALITY.get(value, value))
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Typed values for every known key present in the file."""
        section = self._parser["DEFAULT"]
        values: dict[str, Any] = {}
        try:
            for key in QueueConfig.get_ini_keys():
                if key not in section:
                    continue
                if key in _INT_KEYS:
                    values[key] = section.getint(key)
                elif key in _FLOAT_KEYS:
                    values[key] = section.getfloat(key)
                else:
                    values[key] = section.get(key)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e
        return values

    def _migrate_if_needed(self) -> bool:
        """Writes defaults for keys an older file does not have yet."""
        defaults = QueueConfig.model_construct()
        needs_saving = False

        config_section = self._parser["DEFAULT"]

        for key in sorted(QueueConfig.get_ini_keys()):
            if key not in config_section:
                config_section[key] = self._to_ini_value(key, getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Config upgrade: wrote default for '{key}' with "
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
