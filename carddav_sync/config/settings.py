"""
Engine tunables resolved once at process start.

Values come from, in order of precedence:
- Explicit overrides (CLI options)
- Environment variables (container deployments)
- The YAML configuration file
- Built-in defaults
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from carddav_sync.config.loader import ConfigError
from carddav_sync.daemon import parse_interval
from carddav_sync.utils.paths import default_database_file, expand_path

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_ROOT = Path("/data/collections")
DEFAULT_USERS_FILE = Path("/data/users")
DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_WATCH_DEBOUNCE = 2.0
DEFAULT_READONLY_AUTH_INTERVAL = 30.0
DEFAULT_BCRYPT_ROUNDS = 10
DEFAULT_LOCK_TIMEOUT = 10.0
DEFAULT_DB_TIMEOUT = 5.0

# Environment variable -> settings field
ENV_VARS: dict[str, str] = {
    "RADICALE_STORAGE_PATH": "storage_root",
    "RADICALE_USERS_FILE": "users_file",
    "CARDDAV_SYNC_DATABASE": "database_path",
    "SYNC_INTERVAL": "sync_interval",
    "WATCH_DEBOUNCE": "watch_debounce",
    "READONLY_AUTH_SYNC_INTERVAL": "readonly_auth_interval",
    "CARDDAV_SYNC_BCRYPT_ROUNDS": "bcrypt_rounds",
}

_PATH_FIELDS = {"storage_root", "users_file", "database_path"}
_INTERVAL_FIELDS = {"sync_interval", "watch_debounce", "readonly_auth_interval"}
_INT_FIELDS = {"bcrypt_rounds"}
_FLOAT_FIELDS = {"lock_timeout", "db_timeout"}


@dataclass
class EngineSettings:
    """
    Tunables consumed by the engine at startup.

    Attributes:
        storage_root: Directory holding one sub-directory per collection
        users_file: Credential file read by the CardDAV server
        database_path: SQLite file, or None for the default next to the config
        sync_interval: Seconds between outbound passes
        watch_debounce: Seconds of quiet before a watcher batch is flushed
        readonly_auth_interval: Seconds between read-only account syncs
        bcrypt_rounds: Cost factor for newly hashed passwords
        lock_timeout: Seconds to wait for the credential file lock
        db_timeout: Seconds to wait for a database connection
    """

    storage_root: Path = DEFAULT_STORAGE_ROOT
    users_file: Path = DEFAULT_USERS_FILE
    database_path: Path | None = None
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    watch_debounce: float = DEFAULT_WATCH_DEBOUNCE
    readonly_auth_interval: float = DEFAULT_READONLY_AUTH_INTERVAL
    bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    db_timeout: float = DEFAULT_DB_TIMEOUT
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def resolve(
        cls,
        config: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> EngineSettings:
        """
        Build settings from the YAML mapping, the environment and overrides.

        Args:
            config: Parsed YAML configuration (may be empty)
            env: Environment mapping, defaults to os.environ
            overrides: Explicit values, typically from CLI options.
                       None values are ignored.

        Returns:
            Resolved EngineSettings

        Raises:
            ConfigError: If any value cannot be converted
        """
        env = os.environ if env is None else env
        known = {f.name for f in fields(cls)} - {"extra"}
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}

        for key, value in (config or {}).items():
            if key in known:
                values[key] = value
            else:
                extra[key] = value

        for var, name in ENV_VARS.items():
            raw = env.get(var)
            if raw not in (None, ""):
                values[name] = raw

        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value

        converted = {key: _convert(key, value) for key, value in values.items()}
        settings = cls(**converted, extra=extra)
        logger.debug(f"Resolved settings: {settings}")
        return settings

    def database_file(self, config_dir: Path) -> Path:
        """
        Return the SQLite path.

        Defaults to contacts.db in config_dir; a relative database_path is
        taken relative to config_dir.
        """
        if self.database_path is None:
            return default_database_file(config_dir)
        return expand_path(self.database_path, config_dir)


def _convert(key: str, value: Any) -> Any:
    try:
        if key in _PATH_FIELDS:
            return Path(value).expanduser()
        if key in _INTERVAL_FIELDS:
            seconds = parse_interval(value)
            if seconds <= 0:
                raise ValueError(f"must be positive, got {value!r}")
            return float(seconds)
        if key in _INT_FIELDS:
            return int(value)
        if key in _FLOAT_FIELDS:
            result = float(value)
            if result <= 0:
                raise ValueError(f"must be positive, got {value!r}")
            return result
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for '{key}': {e}") from e
    return value
