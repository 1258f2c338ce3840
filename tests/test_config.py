"""
Unit tests for configuration loading and validation.

Tests strict validation, precedence and environment overrides.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest
import yaml

from cost_statusline.config.loader import (
    StatuslineConfig,
    WindowAnchor,
    apply_env_overrides,
    load_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "statusline.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        config_data = {
            "cache": {"db_path": "/tmp/x.db", "enabled": False, "local_ttl": 10, "api_ttl": 30},
            "remote": {"enabled": False, "timeout": 2},
            "window": {"anchor": "transcript"},
            "paths": {"roots": ["/a", "/b"]},
            "pricing": {"path": "/etc/prices.yaml"},
            "logging": {"level": "debug"},
        }
        config = load_config(self._write_config(config_data), env={})

        assert config.db_path == Path("/tmp/x.db")
        assert config.db_enabled is False
        assert config.local_ttl == 10
        assert config.api_ttl == 30
        assert config.fetch_usage is False
        assert config.remote_timeout == 2.0
        assert config.window_anchor is WindowAnchor.TRANSCRIPT
        assert config.roots_override == "/a,/b"
        assert config.pricing_path == Path("/etc/prices.yaml")
        assert config.log_level == "DEBUG"

    def test_empty_file_gives_defaults(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        Path(path).write_text("", encoding="utf-8")
        config = load_config(path, env={})
        assert config.local_ttl == 60
        assert config.window_anchor is WindowAnchor.PROVIDER

    def test_log_window_anchor(self):
        config = load_config(self._write_config({"window": {"anchor": "log"}}), env={})
        assert config.window_anchor is WindowAnchor.LOG

    def test_unknown_section_rejected(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"display": {}}), env={})

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown cache keys"):
            load_config(self._write_config({"cache": {"size": 3}}), env={})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError, match="local_ttl"):
            load_config(self._write_config({"cache": {"local_ttl": -1}}), env={})
        with pytest.raises(ValueError, match="remote.timeout"):
            load_config(self._write_config({"remote": {"timeout": "slow"}}), env={})
        with pytest.raises(ValueError, match="window.anchor"):
            load_config(self._write_config({"window": {"anchor": "sundial"}}), env={})
        with pytest.raises(ValueError, match="log level"):
            load_config(self._write_config({"logging": {"level": "loud"}}), env={})

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        Path(path).write_text("cache: [unclosed", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            load_config(path, env={})

    def test_explicit_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(self.temp_dir, "missing.yaml"), env={})

    def test_config_path_from_env(self):
        path = self._write_config({"cache": {"local_ttl": 5}})
        config = load_config(env={"CLAUDE_STATUSLINE_CONFIG": path})
        assert config.local_ttl == 5

    def test_env_overrides_file(self):
        path = self._write_config({"cache": {"local_ttl": 5, "db_path": "/tmp/file.db"}})
        env = {"CLAUDE_CACHE_TTL": "0", "CLAUDE_STATUSLINE_DB_PATH": "/tmp/env.db"}
        config = load_config(path, env=env)
        assert config.local_ttl == 0
        assert config.db_path == Path("/tmp/env.db")


class TestEnvOverrides:
    """Test environment variable handling."""

    def test_defaults(self):
        config = apply_env_overrides(StatuslineConfig(), {})
        assert config.db_enabled is True
        assert config.fetch_usage is True
        assert config.db_path == Path("~/.claude/statusline.db").expanduser()

    def test_db_cache_disable(self):
        assert apply_env_overrides(StatuslineConfig(), {"CLAUDE_DB_CACHE_DISABLE": "1"}).db_enabled is False
        assert apply_env_overrides(StatuslineConfig(), {"CLAUDE_DB_CACHE_DISABLE": "0"}).db_enabled is True

    @pytest.mark.parametrize("value,expected", [
        ("", True),
        ("1", True),
        ("true", True),
        ("0", False),
        ("false", False),
        ("off", False),
    ])
    def test_fetch_usage(self, value, expected):
        config = apply_env_overrides(StatuslineConfig(), {"CLAUDE_STATUSLINE_FETCH_USAGE": value})
        assert config.fetch_usage is expected

    @pytest.mark.parametrize("value", ["heuristic", "none", "transcript"])
    def test_window_anchor_disabled(self, value):
        config = apply_env_overrides(StatuslineConfig(), {"CLAUDE_WINDOW_ANCHOR": value})
        assert config.window_anchor is WindowAnchor.TRANSCRIPT

    def test_window_anchor_log(self):
        config = apply_env_overrides(StatuslineConfig(), {"CLAUDE_WINDOW_ANCHOR": "LOG"})
        assert config.window_anchor is WindowAnchor.LOG

    def test_malformed_ttl_ignored(self):
        assert apply_env_overrides(StatuslineConfig(), {"CLAUDE_CACHE_TTL": "soon"}).local_ttl == 60
        assert apply_env_overrides(StatuslineConfig(), {"CLAUDE_CACHE_TTL": "-3"}).local_ttl == 60

    def test_roots_and_log_level(self):
        env = {"CLAUDE_CONFIG_DIR": "/x,/y", "CLAUDE_STATUSLINE_LOG_LEVEL": "info"}
        config = apply_env_overrides(StatuslineConfig(), env)
        assert config.roots_override == "/x,/y"
        assert config.log_level == "INFO"

    def test_invalid_dataclass_values(self):
        with pytest.raises(ValueError):
            StatuslineConfig(remote_timeout=0)
