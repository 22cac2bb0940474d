"""
YAML configuration file for carddav-sync.

The file is optional. Every key mirrors an engine setting or a CLI/daemon
option; environment variables and command-line options override it (see
carddav_sync.config.settings). Example::

    storage_root: /data/collections
    users_file: /data/users
    sync_interval: 30s
    watch_debounce: 500ms
    bcrypt_rounds: 10
    log_dir: logs
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from carddav_sync.utils.paths import CONFIG_DIR_ENV_VAR, DEFAULT_CONFIG_DIR

DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


@dataclass(frozen=True)
class ConfigKey:
    """Accepted types and bounds of one configuration key."""

    types: tuple[type, ...]
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    exclusive_minimum: bool = False

    def check(self, key: str, value: Any) -> None:
        # bool is an int subclass and is only valid for flag keys
        if isinstance(value, bool) and bool not in self.types:
            raise ConfigError(f"Invalid type for '{key}': expected {self}, got bool")
        if not isinstance(value, self.types):
            raise ConfigError(
                f"Invalid type for '{key}': expected {self}, "
                f"got {type(value).__name__}"
            )
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return
        if self.minimum is not None:
            too_low = (
                value <= self.minimum if self.exclusive_minimum else value < self.minimum
            )
            if too_low:
                op = ">" if self.exclusive_minimum else ">="
                raise ConfigError(f"{key} must be {op} {self.minimum:g}, got {value}")
        if self.maximum is not None and value > self.maximum:
            raise ConfigError(f"{key} must be <= {self.maximum:g}, got {value}")

    def __str__(self) -> str:
        return " or ".join(t.__name__ for t in self.types)


_PATH = ConfigKey((str,))
_INTERVAL = ConfigKey((str, int, float))
_TIMEOUT = ConfigKey((int, float), minimum=0, exclusive_minimum=True)
_FLAG = ConfigKey((bool,))

# Keys not listed here are ignored so newer files work with older releases
KNOWN_KEYS: dict[str, ConfigKey] = {
    "storage_root": _PATH,
    "users_file": _PATH,
    "database_path": _PATH,
    "sync_interval": _INTERVAL,
    "watch_debounce": _INTERVAL,
    "readonly_auth_interval": _INTERVAL,
    "lock_timeout": _TIMEOUT,
    "db_timeout": _TIMEOUT,
    "bcrypt_rounds": ConfigKey((int,), minimum=4, maximum=31),
    "verbose": _FLAG,
    "log_dir": _PATH,
    "log_retention_count": ConfigKey((int,), minimum=0),
    "daemon_pid_file": _PATH,
    "watch_enabled": _FLAG,
}


class ConfigLoader:
    """
    Reads and checks the YAML configuration file.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

        config = loader.load_from_file("/etc/carddav-sync.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Args:
            config_dir: Directory holding the file. Defaults to
                        $CARDDAV_SYNC_CONFIG_DIR, then ~/.carddav-sync
            config_file: File name inside config_dir
        """
        if config_dir is None:
            config_dir = os.environ.get(CONFIG_DIR_ENV_VAR) or DEFAULT_CONFIG_DIR
        self.config_dir = Path(config_dir)
        self.config_file = config_file

    @property
    def path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """Load the file in config_dir; a missing file yields ``{}``."""
        return self.load_from_file(self.path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Parse a YAML mapping from ``path``.

        Returns:
            The mapping, or an empty dict when the file is missing or empty

        Raises:
            ConfigError: If the file cannot be read, is not valid YAML or
                         does not contain a mapping
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            logger.debug(f"No configuration file at {path}")
            return {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(
                "Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )
        logger.debug(f"Loaded configuration from {path}: {sorted(config)}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Check types and bounds of every known key.

        Raises:
            ConfigError: On the first invalid key
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )
        for key, value in config.items():
            rule = KNOWN_KEYS.get(key)
            if rule is None:
                logger.debug(f"Ignoring unknown configuration key '{key}'")
                continue
            rule.check(key, value)

    def load_and_validate(self) -> dict[str, Any]:
        config = self.load()
        self.validate(config)
        return config
