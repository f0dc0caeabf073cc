"""
Centralized Configuration for Host Triage

All configuration is managed through this module. Settings can be overridden
via environment variables with the HT_ prefix, or by a YAML file named in
HT_CONFIG_FILE (environment variables win over the file).

Environment Variables:
    HT_CONFIG_FILE: Optional YAML file with the same keys as Config
    HT_DATA_DIR: Base data directory (default: ~/.host-triage)
    HT_DB_PATH: Path to the artifact database
    HT_EVTX_STAGING_DIR: Where selected EVTX files are copied before parsing
    HT_COMMAND_TIMEOUT: Seconds before an external command is killed (default: 60)
    HT_MAX_OUTPUT: Max bytes captured from a command (default: 50MB)
    HT_LOG_WINDOW: Look-back window for macOS unified log and Windows Security log queries (default: 24h)
    HT_RDP_MAX_EVENTS: Max events read per RDP event channel (default: 500)
    HT_HASH_EXECUTABLES: Hash process executables (default: true)
    HT_LOG_LEVEL: Logging level (default: INFO)
    HT_LOG_FORMAT: "json" or "text" (default: json)
    HT_LOG_FILE: Also append JSON logs under <data_dir>/logs (default: false)

Usage:
    from host_triage.config import get_config
    config = get_config()
    print(config.db_path)
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_WINDOW_RE = re.compile(r"^\d+[smhd]$")


@dataclass
class Config:
    """Centralized configuration - validated at creation time."""

    # Paths
    data_dir: Path = field(default=None)
    db_path: Path = field(default=None)
    evtx_staging_dir: Path = field(default=None)

    # Command execution
    command_timeout: int = 60
    max_output_bytes: int = 52_428_800  # 50MB

    # Collection behavior
    log_window: str = "24h"
    rdp_max_events: int = 500
    hash_executables: bool = True

    log_level: str = "INFO"
    log_format: str = "json"
    log_file: bool = False

    def __post_init__(self):
        """Set defaults and validate configuration after creation."""
        if self.data_dir is None:
            self.data_dir = Path.home() / ".host-triage"
        if self.db_path is None:
            self.db_path = Path(self.data_dir) / "host_triage.db"
        if self.evtx_staging_dir is None:
            self.evtx_staging_dir = Path(tempfile.gettempdir()) / "host-triage" / "evtx"

        self.data_dir = Path(self.data_dir)
        self.db_path = Path(self.db_path)
        self.evtx_staging_dir = Path(self.evtx_staging_dir)

        self._validate()

    def _validate(self):
        """Validate configuration values."""
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if str(self.log_level).upper() not in valid_levels:
            raise ConfigurationError(
                f"Invalid log_level: {self.log_level}. "
                f"Must be one of: {', '.join(valid_levels)}"
            )

        if self.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Invalid log_format: {self.log_format!r}. Must be json or text"
            )

        if self.command_timeout < 1 or self.command_timeout > 3600:
            raise ConfigurationError("command_timeout must be between 1 and 3600")
        if self.max_output_bytes < 1024:
            raise ConfigurationError("max_output_bytes must be at least 1024")
        if self.rdp_max_events < 1 or self.rdp_max_events > 100_000:
            raise ConfigurationError("rdp_max_events must be between 1 and 100,000")
        if not _WINDOW_RE.match(str(self.log_window)):
            raise ConfigurationError(
                f"Invalid log_window: {self.log_window!r}. Expected <n>[smhd], e.g. 24h"
            )


def _parse_int_env(name: str, default: int) -> int:
    """Parse integer from environment variable with error handling.

    Args:
        name: Environment variable name
        default: Default value if not set

    Returns:
        Parsed integer value

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Invalid integer for {name}: {value!r}") from None


def _parse_bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _load_yaml_file(path: Path) -> dict[str, Any]:
    """Read a YAML config file into a dict of known Config keys.

    Raises:
        ConfigurationError: If the file is unreadable, malformed, or has unknown keys
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read config file {path}: {e}") from e

    if not isinstance(doc, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(doc) - known)
    if unknown:
        raise ConfigurationError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return doc


def _load_config_from_env() -> Config:
    """Load configuration from the optional YAML file and environment variables.

    Returns:
        Config instance.

    Raises:
        ConfigurationError: If the file or environment variables are invalid
    """
    values: dict[str, Any] = {}

    config_file = os.environ.get("HT_CONFIG_FILE")
    if config_file:
        values.update(_load_yaml_file(Path(config_file)))

    for key, env in (
        ("data_dir", "HT_DATA_DIR"),
        ("db_path", "HT_DB_PATH"),
        ("evtx_staging_dir", "HT_EVTX_STAGING_DIR"),
    ):
        raw = os.environ.get(env)
        if raw:
            values[key] = Path(raw)

    values["command_timeout"] = _parse_int_env(
        "HT_COMMAND_TIMEOUT", values.get("command_timeout", 60)
    )
    values["max_output_bytes"] = _parse_int_env(
        "HT_MAX_OUTPUT", values.get("max_output_bytes", 52_428_800)
    )
    values["rdp_max_events"] = _parse_int_env(
        "HT_RDP_MAX_EVENTS", values.get("rdp_max_events", 500)
    )
    values["hash_executables"] = _parse_bool_env(
        "HT_HASH_EXECUTABLES", values.get("hash_executables", True)
    )
    values["log_window"] = os.environ.get("HT_LOG_WINDOW", values.get("log_window", "24h"))
    values["log_level"] = os.environ.get("HT_LOG_LEVEL", values.get("log_level", "INFO"))
    values["log_format"] = os.environ.get(
        "HT_LOG_FORMAT", values.get("log_format", "json")
    ).lower()
    values["log_file"] = _parse_bool_env("HT_LOG_FILE", values.get("log_file", False))

    return Config(**values)


# Module-level singleton
_config: Config | None = None


def get_config(reload: bool = False) -> Config:
    """Get or create configuration singleton.

    Args:
        reload: If True, reload configuration from environment variables.

    Returns:
        Current Config instance.
    """
    global _config
    if reload or _config is None:
        _config = _load_config_from_env()
        logger.debug(f"Configuration loaded: db_path={_config.db_path}")
    return _config


def set_config(config: Config) -> None:
    """Set configuration directly (useful for testing).

    Args:
        config: Config instance to use.
    """
    global _config
    _config = config


def reset_config() -> None:
    """Reset configuration to force reload on next get_config() call."""
    global _config
    _config = None
