"""Tests for host_triage.executor: subprocess execution."""

import pytest

from host_triage.config import Config, set_config
from host_triage.exceptions import CommandNotFoundError, CommandTimeoutError
from host_triage.executor import _truncate, execute


class TestExecutor:
    def test_simple_command(self):
        result = execute(["echo", "hello world"])
        assert result["exit_code"] == 0
        assert "hello world" in result["stdout"]
        assert result["elapsed_seconds"] >= 0
        assert "truncated" not in result

    def test_command_with_stderr(self):
        result = execute(["ls", "/nonexistent_path_xyz"])
        assert result["exit_code"] != 0
        assert result["stderr"]

    def test_binary_not_found(self):
        with pytest.raises(CommandNotFoundError, match="Binary not found"):
            execute(["definitely_not_a_binary_xyz"])

    def test_binary_not_found_is_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            execute(["definitely_not_a_binary_xyz"])

    def test_timeout(self):
        with pytest.raises(CommandTimeoutError, match="timed out"):
            execute(["sleep", "30"], timeout=1)

    def test_command_list_preserved(self):
        result = execute(["echo", "a", "b", "c"])
        assert result["command"] == ["echo", "a", "b", "c"]

    def test_cwd(self, tmp_path):
        result = execute(["pwd"], cwd=str(tmp_path))
        assert str(tmp_path) in result["stdout"]

    def test_output_limit(self, tmp_path):
        set_config(Config(data_dir=tmp_path, max_output_bytes=1024))
        big = tmp_path / "big.txt"
        big.write_text("x" * 100_000)
        result = execute(["cat", str(big)])
        assert result["truncated"] is True
        assert len(result["stdout"]) <= 1024


class TestTruncate:
    def test_short_text_unchanged(self):
        assert _truncate("abc", 10) == "abc"

    def test_long_text_marked(self):
        out = _truncate("a" * 50, 10)
        assert out.startswith("a" * 10)
        assert "truncated at 10 chars" in out
