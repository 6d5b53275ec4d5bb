"""
Raz - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: orpheus497
Version: 1.0.0
"""

import copy
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    CLIENT_IDLE_TIMEOUT,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    GROUP_ROOM_CAPACITY,
    MAX_CIPHERTEXT_LENGTH,
    MAX_IV_LENGTH,
    MAX_PASSCODE_LENGTH,
    MAX_SENDER_TOKEN_LENGTH,
    PAIR_ROOM_CAPACITY,
    ROOM_TTL_SECONDS,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": DEFAULT_HOST,
        "port": DEFAULT_SERVER_PORT,
        "client_timeout": CLIENT_IDLE_TIMEOUT,
    },
    "rooms": {
        "ttl_seconds": ROOM_TTL_SECONDS,
        "pair_capacity": PAIR_ROOM_CAPACITY,
        "group_capacity": GROUP_ROOM_CAPACITY,
        "max_passcode_length": MAX_PASSCODE_LENGTH,
        "legacy_persist_on_lapsed_ttl": False,
    },
    "limits": {
        "max_sender_token_length": MAX_SENDER_TOKEN_LENGTH,
        "max_ciphertext_length": MAX_CIPHERTEXT_LENGTH,
        "max_iv_length": MAX_IV_LENGTH,
    },
    "security": {
        # Server-held override credential; empty disables privileged rooms
        "master_passcode": "",
        "argon2_time_cost": ARGON2_TIME_COST,
        "argon2_memory_cost": ARGON2_MEMORY_COST,
        "argon2_parallelism": ARGON2_PARALLELISM,
    },
    "logging": {
        "level": "INFO",
        "file_logging": False,
        "console_logging": True,
        "log_dir": "",
    },
}


class Config:
    """Configuration manager for Raz.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides. Provides a simple
    interface for accessing and updating configuration values.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: RAZ_SECTION_KEY
        For example: RAZ_ROOMS_TTL_SECONDS=300

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"RAZ_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is not None:
                    original_type = type(settings[key])
                    try:
                        if original_type == bool:
                            result[section][key] = env_value.lower() in ("true", "1", "yes")
                        elif original_type == int:
                            result[section][key] = int(env_value)
                        elif original_type == float:
                            result[section][key] = float(env_value)
                        else:
                            result[section][key] = env_value
                    except ValueError:
                        # Keep original value if conversion fails
                        pass

        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Override one known setting for this process.

        Raises:
            ConfigError: If the setting does not exist
        """
        if key not in DEFAULT_CONFIG.get(section, {}):
            raise ConfigError(
                ErrorCode.E700_CONFIG_ERROR,
                f"Unknown setting {section}.{key}",
                {"section": section, "key": key},
            )

        self.data[section][key] = value

    def save(self) -> None:
        """Write the effective configuration to the config file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(self._render_toml(), encoding="utf-8")
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    def _render_toml(self) -> str:
        lines = ["# Raz server configuration", ""]
        for section, settings in self.data.items():
            if not isinstance(settings, dict):
                continue
            lines.append(f"[{section}]")
            for key, value in settings.items():
                # bool before int
                if isinstance(value, bool):
                    lines.append(f"{key} = {str(value).lower()}")
                elif isinstance(value, (int, float)):
                    lines.append(f"{key} = {value}")
                elif isinstance(value, str):
                    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                    lines.append(f'{key} = "{escaped}"')
            lines.append("")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self.data)
