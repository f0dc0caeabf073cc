"""Shared test fixtures for host-triage."""

import pytest

from host_triage.config import Config, reset_config, set_config

_ENV_VARS = (
    "HT_CONFIG_FILE",
    "HT_DATA_DIR",
    "HT_DB_PATH",
    "HT_EVTX_STAGING_DIR",
    "HT_COMMAND_TIMEOUT",
    "HT_MAX_OUTPUT",
    "HT_LOG_WINDOW",
    "HT_RDP_MAX_EVENTS",
    "HT_HASH_EXECUTABLES",
    "HT_LOG_LEVEL",
    "HT_LOG_FORMAT",
    "HT_LOG_FILE",
)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every test at a private data directory and clean HT_ env."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    config = Config(
        data_dir=tmp_path / "data",
        evtx_staging_dir=tmp_path / "staging",
        hash_executables=False,
    )
    set_config(config)
    yield config
    reset_config()
