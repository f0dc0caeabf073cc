"""Artifact sources shared by Linux and macOS: syslog-style auth logs, crontabs,
passwd, shell histories, and file ownership."""

from __future__ import annotations

import getpass
import logging
import os
import re

from ..exceptions import NotFoundError
from ..models import CronEntry, LoginEvent, RdpSession, UserAccount
from ..normalize import dedupe, extract_after, first_token, normalize_timestamp, sort_by_time
from ..shell_history import PARSERS, build_history, current_shell_name
from .base import LocalHostStrategy

logger = logging.getLogger(__name__)

_SYSLOG_LINE = re.compile(
    r"^(?P<ts>[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}|\d{4}-\d{2}-\d{2}T\S+)"
    r"\s+(?P<host>\S+)\s+(?P<tag>[^\s:\[]+)(?:\[\d+\])?:\s*(?P<msg>.*)$"
)
_FAILED_RE = re.compile(r"Failed (?P<method>\S+) for (?:invalid user )?(?P<user>\S+) from (?P<ip>\S+)")
_ACCEPTED_RE = re.compile(r"Accepted (?P<method>\S+) for (?P<user>\S+) from (?P<ip>\S+)")
_RDP_FILTER = re.compile(r"xrdp|rdp|RemoteDesktop", re.IGNORECASE)
_RDP_TIME = re.compile(r"(\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})")
_RDP_USER = re.compile(r"user\s+(\w+)")
_RDP_IP = re.compile(r"from\s+([\d.]+)")
_ENV_LINE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\s*=")

HISTORY_FILES = {
    "zsh": ".zsh_history",
    "bash": ".bash_history",
    "fish": ".local/share/fish/fish_history",
}


def split_syslog_line(line: str) -> tuple[str, str, str] | None:
    """Split a syslog line into (raw timestamp, program tag, message)."""
    m = _SYSLOG_LINE.match(line)
    if not m:
        return None
    return m.group("ts"), m.group("tag"), m.group("msg")


def parse_login_failures(lines: list[str], source: str) -> list[LoginEvent]:
    """sshd "Failed <method>" and PAM "authentication failure" lines."""
    records = []
    for line in lines:
        parts = split_syslog_line(line)
        if parts is None:
            continue
        ts, tag, msg = parts
        m = _FAILED_RE.search(msg)
        if m:
            username, ip = m.group("user"), m.group("ip")
            event_type = f"Failed {m.group('method')}"
            reason = "invalid user" if "invalid user" in msg else event_type
        elif "authentication failure" in msg:
            username = first_token(extract_after(msg, " user=")) or "unknown"
            ip = first_token(extract_after(msg, "rhost="))
            if not ip or "=" in ip:
                ip = "local"
            event_type = "authentication failure"
            reason = event_type
        else:
            continue
        records.append(LoginEvent(
            time=normalize_timestamp(ts),
            event_id=tag,
            event_type=event_type,
            source=source,
            username=username,
            ip_address=ip,
            reason=reason,
            success=False,
        ))
    return records


def parse_login_successes(lines: list[str], source: str) -> list[LoginEvent]:
    """sshd "Accepted <method> for <user> from <ip>" lines."""
    records = []
    for line in lines:
        parts = split_syslog_line(line)
        if parts is None:
            continue
        ts, tag, msg = parts
        m = _ACCEPTED_RE.search(msg)
        if not m:
            continue
        records.append(LoginEvent(
            time=normalize_timestamp(ts),
            event_id=tag,
            event_type=f"Accepted {m.group('method')}",
            source=source,
            username=m.group("user"),
            ip_address=m.group("ip"),
            success=True,
        ))
    return records


def parse_rdp_lines(lines: list[str]) -> list[RdpSession]:
    """xrdp / RemoteDesktop lines from a syslog-style file."""
    records = []
    for line in lines:
        if not _RDP_FILTER.search(line):
            continue
        time_m = _RDP_TIME.search(line)
        if time_m:
            raw_time = time_m.group(1)
        else:
            parts = split_syslog_line(line)
            raw_time = parts[0] if parts else None
        user_m = _RDP_USER.search(line)
        ip_m = _RDP_IP.search(line)
        username = user_m.group(1) if user_m else "unknown"
        ip = ip_m.group(1) if ip_m else "unknown"
        succeeded = any(word in line for word in ("successful", "Accepted", "connected"))
        records.append(RdpSession(
            time=normalize_timestamp(raw_time),
            username=username,
            ip=ip,
            status="success" if succeeded else "failed",
            description=f"User {username} attempted login from {ip}",
        ))
    return records


def parse_passwd(text: str) -> list[UserAccount]:
    """/etc/passwd entries (name:pw:uid:gid:gecos:home:shell)."""
    users = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split(":")
        if len(fields) < 7:
            continue
        users.append(UserAccount(
            username=fields[0],
            uid=fields[2],
            gid=fields[3],
            home_dir=fields[5],
            name=fields[4].split(",", 1)[0],
        ))
    return users


def parse_crontab(text: str, source: str) -> list[CronEntry]:
    """Schedule lines of a crontab, without comments, blanks and VAR=value lines."""
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or _ENV_LINE.match(line):
            continue
        entries.append(CronEntry(line=line, source=source))
    return entries


class PosixStrategy(LocalHostStrategy):
    """Sources common to Linux and macOS."""

    # Syslog-style files searched for login events
    auth_logs: tuple[str, ...] = ()
    # Syslog-style files searched for RDP lines
    rdp_logs: tuple[str, ...] = ()
    # System crontab files, in addition to the user's crontab
    cron_files: tuple[str, ...] = ("/etc/crontab",)
    cron_dirs: tuple[str, ...] = ()

    def current_user(self) -> str:
        return getpass.getuser()

    def file_owner(self, st: os.stat_result) -> tuple[str, str]:
        import grp
        import pwd

        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return owner, group

    def read_lines_newest_first(self, path: str) -> list[str]:
        """Lines of a system log, last line first."""
        return self.read_text(self.host_path(path)).splitlines()[::-1]

    # --- login events from auth logs ---------------------------------------

    def _scan_auth_logs(self, parser) -> list[LoginEvent]:
        records: list[LoginEvent] = []
        for path in self.auth_logs:
            lines = self.gather(path, self.read_lines_newest_first, path)
            records.extend(parser(lines, path))
        return records

    def login_failed(self) -> list[LoginEvent]:
        records = self._scan_auth_logs(parse_login_failures)
        unique = dedupe(records, key=lambda r: (r.time, r.username))
        return sort_by_time(unique)

    def login_success(self) -> list[LoginEvent]:
        records = self._scan_auth_logs(parse_login_successes)
        return sort_by_time(records)

    # --- rdp ---------------------------------------------------------------

    def rdp_sessions(self) -> list[RdpSession]:
        records: list[RdpSession] = []
        for path in self.rdp_logs:
            lines = self.gather(path, self.read_lines_newest_first, path)
            records.extend(parse_rdp_lines(lines))
        return sort_by_time(records)

    # --- scheduled tasks ---------------------------------------------------

    def _user_crontab(self) -> list[CronEntry]:
        # crontab exits 1 with "no crontab for <user>"
        return parse_crontab(self.run(["crontab", "-l"], ok_codes=(0, 1)), "crontab")

    def _cron_dir(self, directory: str) -> list[CronEntry]:
        base = self.host_path(directory)
        if not base.is_dir():
            raise NotFoundError(f"{directory} does not exist")
        entries = []
        for path in sorted(base.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                source = f"{directory}/{path.name}"
                entries.extend(self.gather(
                    source, lambda p=path, s=source: parse_crontab(self.read_text(p), s)
                ))
        return entries

    def cron_entries(self) -> list[CronEntry]:
        entries = self.gather("crontab -l", self._user_crontab)
        for path in self.cron_files:
            entries.extend(self.gather(
                path, lambda p=path: parse_crontab(self.read_text(self.host_path(p)), p)
            ))
        for directory in self.cron_dirs:
            entries.extend(self.gather(directory, self._cron_dir, directory))
        return entries

    # --- users -------------------------------------------------------------

    def users(self) -> list[UserAccount]:
        return parse_passwd(self.read_text(self.host_path("/etc/passwd")))

    # --- shell history -----------------------------------------------------

    def _history_sources(self) -> list[tuple[str, list]]:
        sources = []
        for shell, relative in HISTORY_FILES.items():
            path = self.home_path(relative)
            entries = self.gather(
                str(path), lambda p=path, s=shell: PARSERS[s](self.read_text(p))
            )
            if entries:
                sources.append((shell, entries))
        return sources

    def shell_history(self) -> list:
        return build_history(
            self._history_sources(),
            user=self.current_user(),
            current_shell=current_shell_name(),
        )

    # --- executable path helpers ------------------------------------------

    def _sensitive(self, paths: dict[str, str]) -> dict[str, str]:
        home = str(self.home)
        return {p.replace("~", home, 1) if p.startswith("~") else p: d for p, d in paths.items()}

