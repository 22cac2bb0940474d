"""
carddav_sync.config - Configuration management module

Contains configuration loading, validation, and the engine tunables.
"""

from carddav_sync.config.loader import ConfigError, ConfigLoader
from carddav_sync.config.settings import EngineSettings

__all__ = [
    "ConfigLoader",
    "ConfigError",
    "EngineSettings",
]
