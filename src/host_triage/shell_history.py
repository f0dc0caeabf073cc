"""Shell history file parsers.

Each parser returns ``(epoch_or_None, command)`` pairs in file order. The
platform strategies decide which files to read and turn the pairs into
ShellCommand records via build_history().
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable

from .models import ShellCommand
from .normalize import dedupe, normalize_timestamp

_ZSH_EXTENDED = re.compile(r"^: (\d+):\d+;(.*)$")
_BASH_STAMP = re.compile(r"^#(\d{9,11})$")

HistoryEntry = tuple[int | None, str]


def parse_zsh_history(text: str) -> list[HistoryEntry]:
    """Parse ~/.zsh_history, plain or EXTENDED_HISTORY (": <epoch>:<dur>;cmd")."""
    entries: list[HistoryEntry] = []
    pending: list[str] = []
    stamp: int | None = None
    for line in text.splitlines():
        if pending:
            pending.append(line)
        else:
            m = _ZSH_EXTENDED.match(line)
            if m:
                stamp, line = int(m.group(1)), m.group(2)
            else:
                stamp = None
            pending = [line]
        # Multi-line commands are stored with a trailing backslash
        if pending[-1].endswith("\\"):
            pending[-1] = pending[-1][:-1]
            continue
        command = "\n".join(pending).strip()
        pending = []
        if command:
            entries.append((stamp, command))
    if pending and "\n".join(pending).strip():
        entries.append((stamp, "\n".join(pending).strip()))
    return entries


def parse_bash_history(text: str) -> list[HistoryEntry]:
    """Parse ~/.bash_history, honoring "#<epoch>" lines written under HISTTIMEFORMAT."""
    entries: list[HistoryEntry] = []
    stamp: int | None = None
    for line in text.splitlines():
        m = _BASH_STAMP.match(line.strip())
        if m:
            stamp = int(m.group(1))
            continue
        command = line.strip()
        if command:
            entries.append((stamp, command))
        stamp = None
    return entries


def parse_fish_history(text: str) -> list[HistoryEntry]:
    """Parse fish_history's YAML-like "- cmd: ..." / "  when: ..." blocks."""
    entries: list[HistoryEntry] = []
    for line in text.splitlines():
        if line.startswith("- cmd: "):
            entries.append((None, line[len("- cmd: "):].strip()))
        elif line.startswith("  when: ") and entries:
            try:
                entries[-1] = (int(line.split(":", 1)[1].strip()), entries[-1][1])
            except ValueError:
                pass
    return [e for e in entries if e[1]]


def parse_plain_history(text: str) -> list[HistoryEntry]:
    """One command per line, no timestamps (PowerShell PSReadLine)."""
    return [(None, line.strip()) for line in text.splitlines() if line.strip()]


PARSERS = {
    "zsh": parse_zsh_history,
    "bash": parse_bash_history,
    "fish": parse_fish_history,
    "powershell": parse_plain_history,
}


def current_shell_name() -> str:
    """Basename of $SHELL, or "" when unset."""
    return Path(os.environ.get("SHELL", "")).name


def build_history(
    sources: Iterable[tuple[str, list[HistoryEntry]]],
    user: str,
    current_shell: str = "",
) -> list[ShellCommand]:
    """Turn parsed history into deduplicated ShellCommand records.

    Each source is scanned newest-first so the newest copy of a repeated
    command survives deduplication on (command, user, shell). Records from
    ``current_shell`` are placed first, then the other shells in the order
    given.
    """
    per_shell: list[tuple[str, list[ShellCommand]]] = []
    for shell, entries in sources:
        records = [
            ShellCommand(
                time=normalize_timestamp(stamp),
                command=command,
                user=user,
                shell=shell,
            )
            for stamp, command in reversed(entries)
        ]
        per_shell.append((shell, records))

    per_shell.sort(key=lambda item: item[0] != current_shell)
    ordered = [r for _, records in per_shell for r in records]
    return dedupe(ordered, key=lambda r: (r.command, r.user, r.shell))
