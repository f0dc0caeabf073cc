"""Normalized artifact records.

Every record is an immutable snapshot captured at collection time. Records are
never mutated after creation; they are handed to the caller and optionally
persisted. ``captured_at`` is excluded from equality so that two collections
of the same source line compare equal.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .normalize import now_str


class ArtifactKind(str, Enum):
    """Artifact kinds a collector can produce."""

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    PROCESS = "process"
    NETWORK_INFO = "network_info"
    NETWORK_CONNECTION = "network_connection"
    STARTUP = "startup"
    SHELL_HISTORY = "shell_history"
    PATCH = "patch"
    CRON = "cron"
    RDP = "rdp"
    SYSTEM_INFO = "system_info"
    USERS = "users"
    FILE_MONITOR = "file_monitor"


class _Record:
    """Mixin giving records a JSON-ready dict form."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LoginEvent(_Record):
    time: str
    event_id: str
    event_type: str
    source: str
    username: str
    ip_address: str = "local"
    reason: str = ""
    success: bool = True
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class ProcessSnapshot(_Record):
    pid: int
    name: str
    ppid: int
    parent_name: str
    create_time: float
    exe: str = ""
    cmdline: str = ""
    username: str = ""
    file_ctime: str = ""
    file_mtime: str = ""
    md5: str = ""
    signature: str = ""
    cpu_percent: float = 0.0
    mem_percent: float = 0.0
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class InterfaceStat(_Record):
    name: str
    ip: str = ""
    mac: str = ""
    bytes_sent: int = 0
    bytes_recv: int = 0
    packets_sent: int = 0
    packets_recv: int = 0


@dataclass(frozen=True)
class NetworkSnapshot(_Record):
    hostname: str
    gateway: str
    interfaces: tuple[InterfaceStat, ...] = ()
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class NetworkConnection(_Record):
    proto: str
    local_addr: str
    remote_addr: str
    status: str
    pid: int = 0
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class StartupItem(_Record):
    name: str
    path: str
    type: str
    enabled: bool = True
    last_mod_time: str = ""
    size: int = 0
    description: str = ""
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class ShellCommand(_Record):
    time: str
    command: str
    user: str
    shell: str
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class PatchRecord(_Record):
    time: str
    title: str
    description: str = ""
    status: str = "Installed"
    kb: str = ""
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class CronEntry(_Record):
    line: str
    source: str = "crontab"
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class RdpSession(_Record):
    time: str
    username: str
    ip: str
    status: str
    description: str = ""
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class DiskUsage(_Record):
    mount_point: str
    total_size: int
    used_size: int
    free_size: int
    usage: float


@dataclass(frozen=True)
class SystemSnapshot(_Record):
    hostname: str
    os: str
    arch: str
    cpu_cores: int
    kernel_version: str
    cpu_usage: float
    total_memory: int
    memory_usage: float
    disks: tuple[DiskUsage, ...] = ()
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class UserAccount(_Record):
    username: str
    uid: str = ""
    gid: str = ""
    home_dir: str = ""
    name: str = ""
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class FileStatus(_Record):
    path: str
    exists: bool
    size: int = 0
    mode: str = ""
    mod_time: str = ""
    create_time: str = ""
    access_time: str = ""
    change_time: str = ""
    is_dir: bool = False
    is_symlink: bool = False
    owner: str = ""
    group: str = ""
    permissions: str = ""
    description: str = ""
    captured_at: str = field(default_factory=now_str, compare=False)


@dataclass(frozen=True)
class EvtxEvent(_Record):
    """One decoded Windows Event Log record."""

    time: str
    event_id: int
    provider: str
    level: str
    channel: str
    computer: str
    user_id: str
    description: str
    event_record_id: int = 0
    version: int = 0
    qualifiers: int = 0
    task: int = 0
    opcode: int = 0
    keywords: str = ""
    process_id: int = 0
    thread_id: int = 0
    message: str = ""
    system_info: dict = field(default_factory=dict, compare=False)
    event_data: dict = field(default_factory=dict)
    user_data: dict = field(default_factory=dict, compare=False)
    captured_at: str = field(default_factory=now_str, compare=False)


def records_to_dicts(records) -> list[dict[str, Any]]:
    """Display/export form of a record list."""
    return [r.to_dict() for r in records]
