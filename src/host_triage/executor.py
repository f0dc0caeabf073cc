"""Subprocess executor: shell=False with a bounded timeout and capped output.

Every external command a collector runs goes through this module, so a hung
or chatty tool can only cost one source its data.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Any

from host_triage.config import get_config
from host_triage.exceptions import (
    CommandError,
    CommandNotFoundError,
    CommandTimeoutError,
    PermissionDeniedError,
)

logger = logging.getLogger(__name__)


def _read_pipe(pipe, chunks: list[bytes], limit: int, total: list[int]) -> None:
    """Read from a pipe incrementally, respecting byte limit."""
    while True:
        remaining = limit - total[0]
        if remaining <= 0:
            break
        data = pipe.read(min(65536, remaining))
        if not data:
            break
        chunks.append(data)
        total[0] += len(data)


def execute(
    cmd_list: list[str],
    *,
    timeout: int | None = None,
    cwd: str | None = None,
) -> dict[str, Any]:
    """Execute a command as a subprocess (shell=False).

    Uses Popen with incremental pipe reading to enforce max_output_bytes
    at capture time.

    Args:
        cmd_list: Command and arguments as a list.
        timeout: Seconds before timeout. Defaults to config value.
        cwd: Working directory.

    Returns:
        Dict with exit_code, stdout, stderr, elapsed_seconds, command and,
        when the byte limit was hit, truncated=True.

    Raises:
        CommandNotFoundError: Binary does not exist.
        PermissionDeniedError: Binary is not executable by this user.
        CommandTimeoutError: Command ran past the timeout and was killed.
        CommandError: Any other OS-level failure to start the command.
    """
    config = get_config()
    timeout = timeout or config.command_timeout
    max_bytes = config.max_output_bytes

    start = time.monotonic()
    truncated = False
    try:
        proc = subprocess.Popen(
            cmd_list,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
        )

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        total = [0]  # shared mutable counter across both pipes

        # Read both pipes in threads to avoid deadlock and allow
        # proc.wait() in the main thread to enforce the timeout.
        stdout_thread = threading.Thread(
            target=_read_pipe,
            args=(proc.stdout, stdout_chunks, max_bytes, total),
        )
        stderr_thread = threading.Thread(
            target=_read_pipe,
            args=(proc.stderr, stderr_chunks, max_bytes, total),
        )
        stdout_thread.start()
        stderr_thread.start()

        deadline = start + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                proc.kill()
                proc.wait(timeout=5)
                raise subprocess.TimeoutExpired(cmd_list, timeout)
            if total[0] >= max_bytes:
                truncated = True
                proc.kill()
                proc.wait(timeout=5)
                break
            try:
                proc.wait(timeout=min(0.1, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        stdout_thread.join(timeout=5)
        stderr_thread.join(timeout=5)

        if total[0] >= max_bytes:
            truncated = True

        elapsed = time.monotonic() - start
        stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")

        response: dict[str, Any] = {
            "exit_code": proc.returncode,
            "stdout": stdout,
            "stderr": _truncate(stderr, max_bytes // 10),
            "elapsed_seconds": round(elapsed, 2),
            "command": cmd_list,
        }
        if truncated:
            response["truncated"] = True
            logger.warning("Output of %s truncated at %d bytes", cmd_list[0], max_bytes)
        return response

    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {' '.join(cmd_list)}"
        ) from exc
    except FileNotFoundError as exc:
        raise CommandNotFoundError(f"Binary not found: {cmd_list[0]}") from exc
    except PermissionError as exc:
        raise PermissionDeniedError(f"Permission denied: {cmd_list[0]}") from exc
    except OSError as e:
        raise CommandError(f"OS error executing {cmd_list[0]}: {e}") from e


def _truncate(text: str, max_chars: int) -> str:
    """Truncate text to max_chars."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n... [truncated at {max_chars} chars]"
