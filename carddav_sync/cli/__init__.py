"""CLI package for carddav_sync."""

from carddav_sync.cli.formatters import (
    show_batch_failures,
    show_books,
    show_pass_results,
)
from carddav_sync.cli.main import (
    VALID_DIRECTIONS,
    build_engine,
    cli,
    get_config_dir,
)
from carddav_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "VALID_DIRECTIONS",
    "build_engine",
    "cli",
    "get_config_dir",
    "show_batch_failures",
    "show_books",
    "show_pass_results",
]
