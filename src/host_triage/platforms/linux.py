"""Linux collection strategy."""

from __future__ import annotations

import configparser
import logging
import re
import socket
import struct
from pathlib import Path

from ..exceptions import CommandError, FormatError, NotFoundError
from ..models import PatchRecord, StartupItem
from ..normalize import normalize_timestamp, sort_by_time
from .base import format_epoch
from .posix import PosixStrategy

logger = logging.getLogger(__name__)

_APT_ACTIONS = ("Install", "Upgrade", "Remove", "Purge", "Downgrade", "Reinstall")
_APT_STATUS = {
    "Install": "Installed",
    "Upgrade": "Upgraded",
    "Remove": "Removed",
    "Purge": "Purged",
    "Downgrade": "Downgraded",
    "Reinstall": "Reinstalled",
}
_DNF_LINE = re.compile(r"^(?P<ts>\S+)\s+SUBDEBUG\s+(?P<action>Installed|Upgrade|Upgraded|Erase|Reinstall|Downgrade):\s+(?P<pkg>\S+)")
_UNIT_DESCRIPTION = re.compile(r"^Description\s*=\s*(.*)$", re.MULTILINE)

SENSITIVE_FILES = {
    "/etc/passwd": "User account database",
    "/etc/shadow": "Password hashes",
    "/etc/group": "Group database",
    "/etc/sudoers": "sudo privilege configuration",
    "/etc/hosts": "Static hostname resolution",
    "/etc/resolv.conf": "DNS resolver configuration",
    "/etc/ssh/sshd_config": "SSH server configuration",
    "/etc/ssh/ssh_config": "SSH client configuration",
    "/etc/profile": "System-wide shell environment",
    "/etc/bashrc": "System-wide bash configuration",
    "/etc/hosts.allow": "TCP wrappers allow list",
    "/etc/hosts.deny": "TCP wrappers deny list",
    "/etc/crontab": "System crontab",
    "/etc/ld.so.preload": "Preloaded shared libraries",
    "/etc/rc.local": "Legacy boot script",
    "/var/log/auth.log": "Authentication log",
    "/var/log/secure": "Security log",
    "/var/log/messages": "System messages log",
    "/var/log/syslog": "System log",
    "/var/log/wtmp": "Login records",
    "/var/log/btmp": "Failed login records",
    "/var/log/lastlog": "Last login records",
    "/var/log/audit/audit.log": "Audit log",
    "/etc/pam.d/common-auth": "PAM authentication configuration",
    "/etc/pam.d/common-password": "PAM password policy",
    "/etc/pam.d/common-session": "PAM session configuration",
    "/etc/pam.d/common-account": "PAM account configuration",
    "/etc/security/access.conf": "Login access control",
    "/etc/security/limits.conf": "Resource limits",
    "/etc/security/pwquality.conf": "Password quality policy",
    "/etc/security/faillock.conf": "Failed login lockout policy",
    "/etc/security/opasswd": "Previous password hashes",
    "~/.ssh/authorized_keys": "Authorized SSH keys",
    "~/.bashrc": "User bash configuration",
}


def parse_apt_history(text: str) -> list[PatchRecord]:
    """One record per /var/log/apt/history.log transaction with package changes."""
    records = []
    for block in re.split(r"\n\s*\n", text):
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, sep, value = line.partition(": ")
            if sep:
                fields[key.strip()] = value.strip()
        actions = [a for a in _APT_ACTIONS if a in fields]
        if "Start-Date" not in fields or not actions:
            continue
        records.append(PatchRecord(
            time=normalize_timestamp(fields["Start-Date"]),
            title=fields.get("Commandline", "apt"),
            description="\n".join(f"{a}: {fields[a]}" for a in actions),
            status=_APT_STATUS[actions[0]],
        ))
    return records


def parse_dnf_rpm_log(text: str) -> list[PatchRecord]:
    """Package transactions from /var/log/dnf.rpm.log."""
    records = []
    for line in text.splitlines():
        m = _DNF_LINE.match(line.strip())
        if not m:
            continue
        records.append(PatchRecord(
            time=normalize_timestamp(m.group("ts")),
            title=m.group("pkg"),
            description=f"{m.group('action')}: {m.group('pkg')}",
            status=m.group("action"),
        ))
    return records


def parse_desktop_entry(text: str) -> dict[str, str]:
    """[Desktop Entry] section of a .desktop file as a dict."""
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise FormatError(f"Malformed desktop entry: {e}") from e
    if not parser.has_section("Desktop Entry"):
        return {}
    return dict(parser["Desktop Entry"])


def parse_route_table(text: str) -> str:
    """Default gateway from /proc/net/route (little-endian hex)."""
    for line in text.splitlines()[1:]:
        cols = line.split()
        if len(cols) >= 3 and cols[1] == "00000000" and cols[2] != "00000000":
            return socket.inet_ntoa(struct.pack("<L", int(cols[2], 16)))
    return ""


class LinuxStrategy(PosixStrategy):
    name = "linux"

    auth_logs = ("/var/log/auth.log", "/var/log/secure")
    rdp_logs = ("/var/log/auth.log", "/var/log/secure")
    cron_files = ("/etc/crontab",)
    cron_dirs = ("/etc/cron.d",)

    autostart_dirs = (
        ("~/.config/autostart", "UserAutostart"),
        ("/etc/xdg/autostart", "SystemAutostart"),
    )
    systemd_wants_dirs = (
        "/etc/systemd/system/multi-user.target.wants",
        "/etc/systemd/system/default.target.wants",
    )

    def gateway(self) -> str:
        try:
            out = self.run(["ip", "route", "show", "default"])
        except (NotFoundError, CommandError):
            return parse_route_table(self.read_text(self.host_path("/proc/net/route")))
        m = re.search(r"default via (\S+)", out)
        return m.group(1) if m else ""

    def sensitive_files(self) -> dict[str, str]:
        return self._sensitive(SENSITIVE_FILES)

    # --- startup -----------------------------------------------------------

    def _resolve(self, directory: str) -> Path:
        if directory.startswith("~/"):
            return self.home_path(directory[2:])
        return self.host_path(directory)

    def _desktop_item(self, path: Path, kind: str) -> StartupItem:
        entry = parse_desktop_entry(self.read_text(path))
        st = path.stat()
        enabled = (
            entry.get("Hidden", "false").lower() != "true"
            and entry.get("X-GNOME-Autostart-enabled", "true").lower() != "false"
        )
        return StartupItem(
            name=entry.get("Name", path.stem),
            path=str(path),
            type=kind,
            enabled=enabled,
            last_mod_time=format_epoch(st.st_mtime),
            size=st.st_size,
            description=entry.get("Comment") or entry.get("Name", ""),
        )

    def _autostart_dir(self, directory: str, kind: str) -> list[StartupItem]:
        base = self._resolve(directory)
        if not base.is_dir():
            raise NotFoundError(f"{directory} does not exist")
        return self.gather_each(sorted(base.glob("*.desktop")), self._desktop_item, kind)

    def _systemd_unit(self, link: Path) -> StartupItem:
        target = link
        if link.is_symlink():
            try:
                target = link.resolve()
            except (OSError, RuntimeError) as e:
                # symlink loop: RuntimeError before 3.13, OSError after
                logger.warning("Cannot resolve unit link %s: %s", link, e)
        try:
            text = self.read_text(target)
            st = target.stat()
        except (NotFoundError, OSError):
            text, st = "", None
        m = _UNIT_DESCRIPTION.search(text)
        return StartupItem(
            name=link.stem,
            path=str(target),
            type="SystemdService",
            enabled=True,
            last_mod_time=format_epoch(st.st_mtime) if st else "",
            size=st.st_size if st else 0,
            description=m.group(1).strip() if m else "",
        )

    def _systemd_units(self, directory: str) -> list[StartupItem]:
        base = self.host_path(directory)
        if not base.is_dir():
            raise NotFoundError(f"{directory} does not exist")
        return self.gather_each(sorted(base.glob("*.service")), self._systemd_unit)

    def startup_items(self) -> list[StartupItem]:
        items: list[StartupItem] = []
        for directory, kind in self.autostart_dirs:
            items.extend(self.gather(directory, self._autostart_dir, directory, kind))
        for directory in self.systemd_wants_dirs:
            items.extend(self.gather(directory, self._systemd_units, directory))
        return items

    # --- patches -----------------------------------------------------------

    def patches(self) -> list[PatchRecord]:
        records = self.gather(
            "/var/log/apt/history.log",
            lambda: parse_apt_history(self.read_text(self.host_path("/var/log/apt/history.log"))),
        )
        records += self.gather(
            "/var/log/dnf.rpm.log",
            lambda: parse_dnf_rpm_log(self.read_text(self.host_path("/var/log/dnf.rpm.log"))),
        )
        return sort_by_time(records)
