"""Pytest fixtures for host-triage collector and store tests."""

from pathlib import Path

import pytest

from host_triage.db import ArtifactStore
from host_triage.exceptions import CommandNotFoundError


class FakeRunner:
    """Command runner returning canned results.

    ``outputs`` maps a command prefix ("crontab" or "log show") to either a
    stdout string (exit code 0) or a full result dict. The longest matching
    prefix wins; unmatched commands behave like a missing binary.
    """

    def __init__(self, outputs=None):
        self.outputs = dict(outputs or {})
        self.calls = []

    def __call__(self, cmd):
        self.calls.append(list(cmd))
        line = " ".join(cmd)
        matches = [key for key in self.outputs if line == key or line.startswith(key + " ")]
        if not matches:
            raise CommandNotFoundError(f"Binary not found: {cmd[0]}")
        result = self.outputs[max(matches, key=len)]
        if isinstance(result, str):
            return {"exit_code": 0, "stdout": result, "stderr": ""}
        return {"stdout": "", "stderr": "", **result}


class FakeRoot:
    """A throwaway filesystem root standing in for "/"."""

    def __init__(self, base: Path):
        self.path = base

    def write(self, path: str, text: str) -> Path:
        target = self.path / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
        return target

    def mkdir(self, path: str) -> Path:
        target = self.path / path.lstrip("/")
        target.mkdir(parents=True, exist_ok=True)
        return target


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    return FakeRoot(root)


@pytest.fixture
def fake_home(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    return FakeRoot(home)


@pytest.fixture
def store(tmp_path):
    """An initialized artifact store in a temporary file."""
    db = ArtifactStore(tmp_path / "triage.db")
    db.init_schema()
    yield db
    db.close()
