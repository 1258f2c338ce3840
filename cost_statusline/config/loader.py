"""
Configuration management and loading.

Handles the optional YAML settings file and environment variables.
Precedence: built-in defaults < YAML file < environment.
"""

import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

CONFIG_PATH_ENV = "CLAUDE_STATUSLINE_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.claude/statusline.yaml")
DEFAULT_DB_PATH = Path("~/.claude/statusline.db")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class WindowAnchor(Enum):
    """Which sources may decide where the 5-hour window starts.

    PROVIDER tries the usage endpoint, then usage-limit notices in the logs,
    then the transcript. LOG skips the endpoint; TRANSCRIPT uses only the
    first event in the trailing five hours.
    """
    PROVIDER = "provider"
    LOG = "log"
    TRANSCRIPT = "transcript"


@dataclass(frozen=True)
class StatuslineConfig:
    """Complete runtime configuration."""
    db_path: Path = DEFAULT_DB_PATH
    db_enabled: bool = True
    local_ttl: int = 60
    api_ttl: int = 60
    fetch_usage: bool = True
    remote_timeout: float = 5.0
    window_anchor: WindowAnchor = WindowAnchor.PROVIDER
    roots_override: Optional[str] = None
    pricing_path: Optional[Path] = None
    log_level: str = "WARNING"

    def __post_init__(self):
        """Validate numeric settings."""
        if self.local_ttl < 0:
            raise ValueError("local_ttl must be >= 0")
        if self.api_ttl < 0:
            raise ValueError("api_ttl must be >= 0")
        if self.remote_timeout <= 0:
            raise ValueError("remote timeout must be > 0")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log level must be one of: {sorted(_LOG_LEVELS)}")


_ALLOWED_KEYS: Dict[str, set] = {
    "cache": {"db_path", "enabled", "local_ttl", "api_ttl"},
    "remote": {"enabled", "timeout"},
    "window": {"anchor"},
    "paths": {"roots"},
    "pricing": {"path"},
    "logging": {"level"},
}


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> StatuslineConfig:
    """Load configuration from YAML (if present) and the environment.

    A missing file at the default location is not an error; a missing file
    that was asked for explicitly is.

    Args:
        path: Explicit config path (defaults to ``CLAUDE_STATUSLINE_CONFIG``
            or ``~/.claude/statusline.yaml``)
        env: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated StatuslineConfig

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if env is None else env
    explicit = path or env.get(CONFIG_PATH_ENV, "").strip() or None
    config_path = Path(explicit).expanduser() if explicit else DEFAULT_CONFIG_PATH.expanduser()

    config = StatuslineConfig()
    if config_path.is_file():
        config = load_config_file(config_path, config)
    elif explicit:
        raise FileNotFoundError(f"Statusline config file not found: {config_path}")

    return apply_env_overrides(config, env)


def load_config_file(path: Path, base: StatuslineConfig) -> StatuslineConfig:
    """Parse and strictly validate a YAML config file on top of ``base``."""
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return base
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_ALLOWED_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    for section, data in raw_config.items():
        if not isinstance(data, dict):
            raise ValueError(f"'{section}' must be a dictionary")
        unknown = set(data.keys()) - _ALLOWED_KEYS[section]
        if unknown:
            raise ValueError(f"Unknown {section} keys: {unknown}")

    changes = {}
    cache = raw_config.get("cache", {})
    if "db_path" in cache:
        changes["db_path"] = Path(_string(cache["db_path"], "cache.db_path"))
    if "enabled" in cache:
        changes["db_enabled"] = _bool(cache["enabled"], "cache.enabled")
    if "local_ttl" in cache:
        changes["local_ttl"] = _int(cache["local_ttl"], "cache.local_ttl")
    if "api_ttl" in cache:
        changes["api_ttl"] = _int(cache["api_ttl"], "cache.api_ttl")

    remote = raw_config.get("remote", {})
    if "enabled" in remote:
        changes["fetch_usage"] = _bool(remote["enabled"], "remote.enabled")
    if "timeout" in remote:
        timeout = remote["timeout"]
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            raise ValueError("'remote.timeout' must be a number")
        changes["remote_timeout"] = float(timeout)

    window = raw_config.get("window", {})
    if "anchor" in window:
        try:
            changes["window_anchor"] = WindowAnchor(_string(window["anchor"], "window.anchor").lower())
        except ValueError:
            valid = [anchor.value for anchor in WindowAnchor]
            raise ValueError(f"'window.anchor' must be one of: {valid}")

    roots = raw_config.get("paths", {}).get("roots")
    if roots is not None:
        if not isinstance(roots, list) or not all(isinstance(r, str) for r in roots):
            raise ValueError("'paths.roots' must be a list of strings")
        changes["roots_override"] = ",".join(roots)

    pricing = raw_config.get("pricing", {})
    if "path" in pricing:
        changes["pricing_path"] = Path(_string(pricing["path"], "pricing.path")).expanduser()

    logging_section = raw_config.get("logging", {})
    if "level" in logging_section:
        changes["log_level"] = _string(logging_section["level"], "logging.level").upper()

    return replace(base, **changes)


def apply_env_overrides(config: StatuslineConfig, env: Mapping[str, str]) -> StatuslineConfig:
    """Apply the environment variables the statusline has always honoured.

    Malformed numeric values are ignored rather than failing the render.
    """
    changes = {}

    db_path = env.get("CLAUDE_STATUSLINE_DB_PATH", "").strip()
    if db_path:
        changes["db_path"] = Path(db_path)
    if env.get("CLAUDE_DB_CACHE_DISABLE", "").strip() == "1":
        changes["db_enabled"] = False

    ttl = env.get("CLAUDE_CACHE_TTL", "").strip()
    if ttl:
        try:
            if int(ttl) >= 0:
                changes["local_ttl"] = int(ttl)
        except ValueError:
            pass

    if "CLAUDE_STATUSLINE_FETCH_USAGE" in env:
        value = env["CLAUDE_STATUSLINE_FETCH_USAGE"].strip().lower()
        changes["fetch_usage"] = value == "" or value in _TRUE_VALUES

    anchor = env.get("CLAUDE_WINDOW_ANCHOR", "").strip().lower()
    if anchor in ("heuristic", "none", "transcript"):
        changes["window_anchor"] = WindowAnchor.TRANSCRIPT
    elif anchor == "log":
        changes["window_anchor"] = WindowAnchor.LOG
    elif anchor == "provider":
        changes["window_anchor"] = WindowAnchor.PROVIDER

    roots = env.get("CLAUDE_CONFIG_DIR", "").strip()
    if roots:
        changes["roots_override"] = roots

    level = env.get("CLAUDE_STATUSLINE_LOG_LEVEL", "").strip().upper()
    if level in _LOG_LEVELS:
        changes["log_level"] = level

    config = replace(config, **changes)
    return replace(config, db_path=Path(config.db_path).expanduser())


def _string(value, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value.strip()


def _bool(value, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"'{path}' must be true or false")
    return value


def _int(value, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"'{path}' must be an integer >= 0")
    return value
