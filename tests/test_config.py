"""
Tests for the config module.

Tests YAML configuration loading and validation, and resolution of the
engine settings from file, environment and explicit overrides.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from carddav_sync.config import ConfigError, ConfigLoader, EngineSettings
from carddav_sync.config.loader import DEFAULT_CONFIG_FILE
from carddav_sync.config.settings import (
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_STORAGE_ROOT,
    DEFAULT_SYNC_INTERVAL,
)
from carddav_sync.utils.paths import CONFIG_DIR_ENV_VAR, DEFAULT_CONFIG_DIR


class TestConfigLoaderInitialization:
    """Tests for ConfigLoader initialization."""

    def test_default_config_dir(self):
        """Test that default config dir is used when no argument provided."""
        with patch.dict(os.environ, {}, clear=True):
            loader = ConfigLoader()
            assert loader.config_dir == DEFAULT_CONFIG_DIR
            assert loader.config_file == DEFAULT_CONFIG_FILE

    def test_config_dir_from_environment_variable(self, tmp_path):
        """Test that config dir can be set via environment variable."""
        with patch.dict(os.environ, {CONFIG_DIR_ENV_VAR: str(tmp_path)}):
            assert ConfigLoader().config_dir == tmp_path

    def test_argument_takes_precedence_over_environment(self, tmp_path):
        """Test that explicit argument takes precedence over env variable."""
        with patch.dict(os.environ, {CONFIG_DIR_ENV_VAR: str(tmp_path / "env")}):
            loader = ConfigLoader(config_dir=tmp_path / "arg")
            assert loader.config_dir == tmp_path / "arg"


class TestConfigLoaderLoad:
    """Tests for loading YAML files."""

    def test_missing_file_returns_empty(self, tmp_path):
        """Test a missing config file yields an empty dict."""
        assert ConfigLoader(config_dir=tmp_path).load() == {}

    def test_empty_file_returns_empty(self, tmp_path):
        """Test an empty config file yields an empty dict."""
        (tmp_path / "config.yaml").write_text("")
        assert ConfigLoader(config_dir=tmp_path).load() == {}

    def test_load_values(self, tmp_path):
        """Test values are read from the YAML file."""
        (tmp_path / "config.yaml").write_text(
            "storage_root: /srv/collections\nsync_interval: 10s\nbcrypt_rounds: 12\n"
        )
        config = ConfigLoader(config_dir=tmp_path).load()
        assert config == {
            "storage_root": "/srv/collections",
            "sync_interval": "10s",
            "bcrypt_rounds": 12,
        }

    def test_custom_file_name(self, tmp_path):
        """Test a non-default file name."""
        (tmp_path / "other.yaml").write_text("verbose: true\n")
        assert ConfigLoader(tmp_path, "other.yaml").load() == {"verbose": True}

    def test_invalid_yaml_raises(self, tmp_path):
        """Test unparseable YAML raises ConfigError."""
        (tmp_path / "config.yaml").write_text("key: [unclosed\n")
        with pytest.raises(ConfigError, match="Failed to parse"):
            ConfigLoader(config_dir=tmp_path).load()

    def test_non_mapping_raises(self, tmp_path):
        """Test a YAML list is rejected."""
        (tmp_path / "config.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="dictionary"):
            ConfigLoader(config_dir=tmp_path).load()


class TestConfigLoaderValidate:
    """Tests for configuration validation."""

    @pytest.fixture
    def loader(self, tmp_path):
        return ConfigLoader(config_dir=tmp_path)

    def test_valid_config(self, loader):
        """Test a correct configuration passes."""
        loader.validate(
            {
                "storage_root": "/data/collections",
                "sync_interval": 30,
                "watch_debounce": 0.5,
                "bcrypt_rounds": 10,
                "verbose": False,
                "unknown_key": "ignored",
            }
        )

    @pytest.mark.parametrize(
        "config",
        [
            {"storage_root": 5},
            {"bcrypt_rounds": "10"},
            {"bcrypt_rounds": True},
            {"verbose": "yes"},
            {"lock_timeout": 0},
            {"bcrypt_rounds": 3},
            {"bcrypt_rounds": 32},
            {"log_retention_count": -1},
        ],
    )
    def test_invalid_config(self, loader, config):
        """Test wrong types and out-of-range values are rejected."""
        with pytest.raises(ConfigError):
            loader.validate(config)

    def test_load_and_validate(self, tmp_path):
        """Test loading validates the file contents."""
        (tmp_path / "config.yaml").write_text("bcrypt_rounds: 2\n")
        with pytest.raises(ConfigError):
            ConfigLoader(config_dir=tmp_path).load_and_validate()


class TestEngineSettings:
    """Tests for EngineSettings.resolve."""

    def test_defaults(self):
        """Test built-in defaults apply with no inputs."""
        settings = EngineSettings.resolve({}, env={})
        assert settings.storage_root == DEFAULT_STORAGE_ROOT
        assert settings.sync_interval == DEFAULT_SYNC_INTERVAL
        assert settings.bcrypt_rounds == DEFAULT_BCRYPT_ROUNDS
        assert settings.database_path is None

    def test_precedence(self):
        """Test overrides beat environment, which beats the file."""
        config = {"storage_root": "/from/file", "sync_interval": 5, "watch_debounce": 1}
        env = {"RADICALE_STORAGE_PATH": "/from/env", "SYNC_INTERVAL": "7"}
        settings = EngineSettings.resolve(
            config, env=env, overrides={"storage_root": "/from/cli", "sync_interval": None}
        )
        assert settings.storage_root == Path("/from/cli")
        assert settings.sync_interval == 7.0
        assert settings.watch_debounce == 1.0

    def test_environment_variables(self):
        """Test every supported environment variable."""
        env = {
            "RADICALE_STORAGE_PATH": "/srv/collections",
            "RADICALE_USERS_FILE": "/srv/users",
            "CARDDAV_SYNC_DATABASE": "/srv/contacts.db",
            "SYNC_INTERVAL": "500ms",
            "WATCH_DEBOUNCE": "3",
            "READONLY_AUTH_SYNC_INTERVAL": "1m",
            "CARDDAV_SYNC_BCRYPT_ROUNDS": "4",
        }
        settings = EngineSettings.resolve({}, env=env)
        assert settings.users_file == Path("/srv/users")
        assert settings.database_path == Path("/srv/contacts.db")
        assert settings.sync_interval == 0.5
        assert settings.watch_debounce == 3.0
        assert settings.readonly_auth_interval == 60.0
        assert settings.bcrypt_rounds == 4

    def test_empty_environment_value_is_ignored(self):
        """Test an empty variable does not override the file."""
        settings = EngineSettings.resolve({"sync_interval": 9}, env={"SYNC_INTERVAL": ""})
        assert settings.sync_interval == 9.0

    def test_unknown_keys_kept_as_extra(self):
        """Test keys outside the engine tunables are carried along."""
        settings = EngineSettings.resolve({"verbose": True}, env={})
        assert settings.extra == {"verbose": True}

    @pytest.mark.parametrize(
        "env",
        [{"SYNC_INTERVAL": "soon"}, {"SYNC_INTERVAL": "0"}, {"CARDDAV_SYNC_BCRYPT_ROUNDS": "x"}],
    )
    def test_invalid_values(self, env):
        """Test unconvertible values raise ConfigError."""
        with pytest.raises(ConfigError):
            EngineSettings.resolve({}, env=env)

    def test_database_file(self, tmp_path):
        """Test the database defaults to the config directory."""
        assert EngineSettings().database_file(tmp_path) == tmp_path / "contacts.db"
        settings = EngineSettings(database_path=tmp_path / "x.db")
        assert settings.database_file(tmp_path) == tmp_path / "x.db"

    def test_relative_database_path(self, tmp_path):
        """Test a relative database path is placed in the config directory."""
        settings = EngineSettings.resolve({"database_path": "state/contacts.db"}, env={})
        assert settings.database_file(tmp_path) == tmp_path / "state" / "contacts.db"
