"""macOS collection strategy."""

from __future__ import annotations

import json
import logging
import plistlib
import re
from pathlib import Path
from xml.parsers.expat import ExpatError

from ..exceptions import FormatError, NotFoundError
from ..models import LoginEvent, PatchRecord, StartupItem, UserAccount
from ..normalize import (
    dedupe,
    extract_after,
    extract_first,
    first_token,
    normalize_timestamp,
    sort_by_time,
)
from .base import format_epoch
from .posix import PosixStrategy, parse_passwd

logger = logging.getLogger(__name__)

# Unified log predicates queried for authentication failures
LOGIN_FAILURE_PREDICATES = (
    "subsystem == 'com.apple.security'",
    "subsystem == 'com.apple.authentication'",
    "eventMessage CONTAINS 'Failed to authenticate'",
    "eventMessage CONTAINS 'authentication failed'",
    "eventMessage CONTAINS 'password check failed'",
    "eventMessage CONTAINS 'login failed'",
    "eventMessage CONTAINS 'authentication error'",
)

_FAILURE_HINT = re.compile(r"fail|denied|invalid|error", re.IGNORECASE)

_LAST_LINE = re.compile(
    r"^(?P<user>\S+)\s+(?P<tty>\S+)\s+(?:(?P<host>\S+)\s+)?"
    r"(?P<dow>[A-Z][a-z]{2})\s+(?P<mon>[A-Z][a-z]{2})\s+(?P<day>\d{1,2})\s+"
    r"(?P<hour>\d{1,2}):(?P<minute>\d{2})(?P<rest>.*)$"
)
_LAST_SKIP_USERS = frozenset({"reboot", "shutdown", "wtmp"})

SENSITIVE_FILES = {
    "/etc/passwd": "User account database",
    "/etc/sudoers": "sudo privilege configuration",
    "/etc/hosts": "Static hostname resolution",
    "/etc/resolv.conf": "DNS resolver configuration",
    "/etc/ssh/sshd_config": "SSH server configuration",
    "/etc/ssh/ssh_config": "SSH client configuration",
    "/etc/profile": "System-wide shell environment",
    "/etc/bashrc": "System-wide bash configuration",
    "/etc/zshrc": "System-wide zsh configuration",
    "/etc/crontab": "System crontab",
    "/var/log/system.log": "System log",
    "/var/log/install.log": "Installer log",
    "/var/log/wifi.log": "Wi-Fi connection log",
    "/var/log/fsck_apfs.log": "APFS file system check log",
    "/Library/LaunchAgents": "System launch agents",
    "/Library/LaunchDaemons": "System launch daemons",
    "/Library/Logs/DiagnosticReports": "Diagnostic reports",
    "~/Library/LaunchAgents": "User launch agents",
    "~/.ssh/authorized_keys": "Authorized SSH keys",
    "~/.zshrc": "User zsh configuration",
}


def parse_unified_log_failures(text: str) -> list[LoginEvent]:
    """Authentication failures from `log show --style json` output."""
    if not text.strip():
        return []
    try:
        entries = json.loads(text)
    except json.JSONDecodeError as e:
        raise FormatError(f"Unexpected log show output: {e}") from e

    records = []
    for entry in entries:
        message = entry.get("eventMessage") or ""
        if not _FAILURE_HINT.search(message):
            continue
        user = first_token(extract_first(message, ("for user", "user:"))).strip("'\"")
        records.append(LoginEvent(
            time=normalize_timestamp(entry.get("timestamp")),
            event_id="4625",
            event_type=entry.get("subsystem") or "authentication",
            source="System",
            username=user or "unknown",
            ip_address="local",
            reason=extract_after(message, "reason:") or message,
            success=False,
        ))
    return records


def parse_last_output(text: str) -> list[LoginEvent]:
    """Sessions from BSD `last` output."""
    records = []
    for line in text.splitlines():
        if not line.strip() or line.startswith("wtmp begins"):
            continue
        m = _LAST_LINE.match(line)
        if not m or m.group("user") in _LAST_SKIP_USERS:
            continue
        raw_time = (
            f"{m.group('mon')} {int(m.group('day')):2d} "
            f"{int(m.group('hour')):02d}:{m.group('minute')}:00"
        )
        still = "still logged in" in m.group("rest")
        records.append(LoginEvent(
            time=normalize_timestamp(raw_time),
            event_id="last",
            event_type="still logged in" if still else "logged out",
            source=f"/dev/{m.group('tty')}",
            username=m.group("user"),
            ip_address=m.group("host") or "local",
            success=True,
        ))
    return records


def parse_softwareupdate_history(text: str) -> list[PatchRecord]:
    """Rows of `softwareupdate --history` (Display Name / Version / Date)."""
    records = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("Display Name", "-")):
            continue
        cols = re.split(r"\s{2,}", stripped)
        if len(cols) < 3:
            continue
        name, version, date = cols[0], cols[1], cols[2]
        records.append(PatchRecord(
            time=normalize_timestamp(date),
            title=name,
            description=f"Version {version}",
            status="Installed",
        ))
    return records


def parse_dscacheutil_users(text: str) -> list[UserAccount]:
    """Blocks of `dscacheutil -q user` output."""
    users = []
    for block in re.split(r"\n\s*\n", text.strip()):
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, sep, value = line.partition(":")
            if sep:
                fields[key.strip()] = value.strip()
        if "name" not in fields:
            continue
        users.append(UserAccount(
            username=fields["name"],
            uid=fields.get("uid", ""),
            gid=fields.get("gid", ""),
            home_dir=fields.get("dir", ""),
            name=fields.get("gecos", ""),
        ))
    return users


def describe_launchd_plist(data: dict) -> str:
    """Label plus the program a launchd job runs."""
    label = data.get("Label", "")
    program = data.get("Program") or " ".join(data.get("ProgramArguments") or [])
    if label and program:
        return f"{label}: {program}"
    return label or program or data.get("Description", "")


class MacOSStrategy(PosixStrategy):
    name = "darwin"

    rdp_logs = ("/var/log/system.log", "/var/log/asl.log")
    cron_files = ("/etc/crontab",)

    launchd_dirs = (
        ("/Library/LaunchAgents", "LaunchAgent"),
        ("/Library/LaunchDaemons", "LaunchDaemon"),
        ("~/Library/LaunchAgents", "UserLaunchAgent"),
    )

    def gateway(self) -> str:
        out = self.run(["route", "-n", "get", "default"])
        return extract_after(out, "gateway:")

    def executable_signature(self, path: str) -> str:
        # codesign reports on stderr and exits 1 for unsigned code
        out = self.run(["codesign", "-dv", "--verbose=4", path], ok_codes=(0, 1), include_stderr=True)
        return extract_after(out, "Authority=")

    def sensitive_files(self) -> dict[str, str]:
        return self._sensitive(SENSITIVE_FILES)

    # --- logins ------------------------------------------------------------

    def _log_show(self, predicate: str) -> list[LoginEvent]:
        out = self.run([
            "log", "show", "--predicate", predicate, "--info", "--debug",
            "--last", self.config.log_window, "--style", "json",
        ])
        return parse_unified_log_failures(out)

    def login_failed(self) -> list[LoginEvent]:
        records: list[LoginEvent] = []
        for predicate in LOGIN_FAILURE_PREDICATES:
            # log show emits oldest first; scan newest first for dedupe
            records.extend(reversed(self.gather(predicate, self._log_show, predicate)))
        unique = dedupe(records, key=lambda r: (r.time, r.username))
        return sort_by_time(unique)

    def login_success(self) -> list[LoginEvent]:
        return sort_by_time(parse_last_output(self.run(["last"])))

    # --- patches -----------------------------------------------------------

    def patches(self) -> list[PatchRecord]:
        return sort_by_time(parse_softwareupdate_history(self.run(["softwareupdate", "--history"])))

    # --- users -------------------------------------------------------------

    def users(self) -> list[UserAccount]:
        users = self.gather("dscacheutil", lambda: parse_dscacheutil_users(
            self.run(["dscacheutil", "-q", "user"])
        ))
        if users:
            return users
        return parse_passwd(self.read_text(self.host_path("/etc/passwd")))

    # --- startup -----------------------------------------------------------

    def _launchd_dir(self, directory: str, kind: str) -> list[StartupItem]:
        base = self.home_path(directory[2:]) if directory.startswith("~/") else self.host_path(directory)
        if not base.is_dir():
            raise NotFoundError(f"{directory} does not exist")
        return self.gather_each(sorted(base.glob("*.plist")), self._plist_item, kind)

    def _plist_item(self, path: Path, kind: str) -> StartupItem:
        st = path.stat()
        try:
            with open(path, "rb") as f:
                data = plistlib.load(f)
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            logger.debug("Unreadable plist %s: %s", path, e)
            data = {}
        if not isinstance(data, dict):
            data = {}
        return StartupItem(
            name=data.get("Label") or path.stem,
            path=str(path),
            type=kind,
            enabled=not data.get("Disabled", False),
            last_mod_time=format_epoch(st.st_mtime),
            size=st.st_size,
            description=describe_launchd_plist(data),
        )

    def startup_items(self) -> list[StartupItem]:
        items: list[StartupItem] = []
        for directory, kind in self.launchd_dirs:
            items.extend(self.gather(directory, self._launchd_dir, directory, kind))
        return items
