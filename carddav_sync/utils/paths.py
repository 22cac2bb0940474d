"""
Locations derived from the configuration directory.

Everything the engine keeps for itself (database, PID file, config file)
lives under one directory so a container can mount it as a single volume.
The collection tree and the credential file belong to the CardDAV server
and are configured separately.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".carddav-sync"
CONFIG_DIR_ENV_VAR = "CARDDAV_SYNC_CONFIG_DIR"

DATABASE_FILE_NAME = "contacts.db"
PID_FILE_NAME = "daemon.pid"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory.

    An explicit argument wins over CARDDAV_SYNC_CONFIG_DIR, which wins over
    ~/.carddav-sync. The result is absolute with ``~`` expanded.
    """
    if config_dir is None:
        config_dir = os.environ.get(CONFIG_DIR_ENV_VAR) or DEFAULT_CONFIG_DIR
    return Path(config_dir).expanduser().resolve()


def expand_path(value: Path | str, base: Path) -> Path:
    """Expand ``~`` and anchor a relative path at ``base``."""
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def default_database_file(config_dir: Path) -> Path:
    return config_dir / DATABASE_FILE_NAME


def default_pid_file(config_dir: Path) -> Path:
    return config_dir / PID_FILE_NAME
