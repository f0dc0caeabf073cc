"""PlatformStrategy interface and the psutil-backed host snapshot shared by all OSes.

A strategy answers one question per artifact kind ("what failed logins does
this host record?") using the sources native to its OS. The base class
answers every question with PlatformUnsupportedError; LocalHostStrategy adds
the parts psutil can answer identically everywhere.
"""

from __future__ import annotations

import hashlib
import logging
import os
import platform
import socket
import stat
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

import psutil

from ..config import Config, get_config
from ..exceptions import (
    CommandError,
    HostTriageError,
    NotFoundError,
    PermissionDeniedError,
    PlatformUnsupportedError,
)
from ..executor import execute
from ..models import (
    DiskUsage,
    FileStatus,
    InterfaceStat,
    NetworkConnection,
    NetworkSnapshot,
    ProcessSnapshot,
    SystemSnapshot,
)
from ..normalize import TIME_FORMAT

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], dict]


class PlatformStrategy:
    """Per-OS artifact extraction. Every method returns a list of records."""

    name = "unsupported"

    def __init__(
        self,
        *,
        root: str | Path | None = None,
        home: str | Path | None = None,
        runner: CommandRunner | None = None,
        config: Config | None = None,
    ):
        """
        Args:
            root: Prefix for absolute system paths (mounted image or test tree).
            home: Home directory of the user whose artifacts are collected.
            runner: Callable(cmd) -> result dict shaped like executor.execute().
            config: Config instance (defaults to get_config()).
        """
        self.root = Path(root) if root else Path("/")
        self.home = Path(home) if home else Path.home()
        self.config = config or get_config()
        self._runner = runner

    def __repr__(self) -> str:
        return f"{type(self).__name__}(root={str(self.root)!r})"

    # --- helpers ------------------------------------------------------------

    def host_path(self, path: str) -> Path:
        """Rebase an absolute system path under ``self.root``."""
        return self.root / path.lstrip("/")

    def home_path(self, relative: str) -> Path:
        return self.home / relative

    def run(
        self,
        cmd: list[str],
        ok_codes: tuple[int, ...] = (0,),
        include_stderr: bool = False,
    ) -> str:
        """Run a command and return its output.

        Exit codes outside ``ok_codes`` raise CommandError carrying stderr.
        """
        if self._runner is not None:
            result = self._runner(cmd)
        else:
            result = execute(cmd, timeout=self.config.command_timeout)
        if result["exit_code"] not in ok_codes:
            detail = (result.get("stderr") or "").strip() or f"exit code {result['exit_code']}"
            raise CommandError(f"{cmd[0]} failed: {detail}")
        if include_stderr:
            return result["stdout"] + result.get("stderr", "")
        return result["stdout"]

    def read_text(self, path: Path) -> str:
        """Read a text source, mapping OS errors onto the error taxonomy."""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError as e:
            raise NotFoundError(f"{path} does not exist") from e
        except PermissionError as e:
            raise PermissionDeniedError(f"Permission denied: {path}") from e

    def gather(self, source: str, fn: Callable[..., Iterable], *args, **kwargs) -> list:
        """Call one source, absorbing its failure as an empty contribution."""
        try:
            return list(fn(*args, **kwargs))
        except (HostTriageError, OSError) as e:
            logger.warning(
                "No data available for this source: %s (%s: %s)",
                source, type(e).__name__, e,
            )
            return []
        except Exception:
            logger.warning("Source %s failed unexpectedly", source, exc_info=True)
            return []

    def gather_each(self, paths: Iterable[Path], fn: Callable[..., object], *args) -> list:
        """Build one record per path; a path that fails is skipped on its own."""
        records = []
        for path in paths:
            records.extend(self.gather(str(path), lambda p=path: [fn(p, *args)]))
        return records

    def _unsupported(self, kind: str):
        raise PlatformUnsupportedError(f"{kind} collection is not supported on {self.name}")

    # --- artifact kinds -----------------------------------------------------

    def login_failed(self) -> list:
        self._unsupported("login_failed")

    def login_success(self) -> list:
        self._unsupported("login_success")

    def processes(self) -> list:
        self._unsupported("process")

    def network_info(self) -> list:
        self._unsupported("network_info")

    def network_connections(self) -> list:
        self._unsupported("network_connection")

    def startup_items(self) -> list:
        self._unsupported("startup")

    def shell_history(self) -> list:
        self._unsupported("shell_history")

    def patches(self) -> list:
        self._unsupported("patch")

    def cron_entries(self) -> list:
        self._unsupported("cron")

    def rdp_sessions(self) -> list:
        self._unsupported("rdp")

    def system_info(self) -> list:
        self._unsupported("system_info")

    def users(self) -> list:
        self._unsupported("users")

    def file_monitor(self) -> list:
        self._unsupported("file_monitor")


class UnsupportedStrategy(PlatformStrategy):
    """Strategy for operating systems with no collection support."""

    name = "unsupported"


def format_epoch(ts: float | None) -> str:
    if not ts:
        return ""
    return datetime.fromtimestamp(ts).strftime(TIME_FORMAT)


def file_md5(path: str) -> str:
    """MD5 of a file, read in chunks. Empty string if unreadable."""
    digest = hashlib.md5()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
    except OSError:
        return ""
    return digest.hexdigest()


class LocalHostStrategy(PlatformStrategy):
    """Adds psutil-backed process, network, system and file snapshots.

    Subclasses supply the OS-specific hooks: gateway(),
    executable_signature() and sensitive_files().
    """

    # --- hooks --------------------------------------------------------------

    def gateway(self) -> str:
        return ""

    def executable_signature(self, path: str) -> str:
        return ""

    def sensitive_files(self) -> dict[str, str]:
        """{path: description} of files whose metadata is snapshotted."""
        return {}

    def file_owner(self, st: os.stat_result) -> tuple[str, str]:
        return "", ""

    # --- process ------------------------------------------------------------

    def executable_signatures(self, paths: list[str]) -> dict[str, str]:
        """{path: signer} for many executables. Override to batch the lookup."""
        signatures = {}
        for path in paths:
            try:
                signatures[path] = self.executable_signature(path)
            except (HostTriageError, OSError) as e:
                logger.debug("No signature for %s: %s", path, e)
        return signatures

    def processes(self) -> list[ProcessSnapshot]:
        attrs = ["pid", "name", "ppid", "create_time", "exe", "cmdline",
                 "username", "memory_percent"]
        procs = list(psutil.process_iter(attrs))
        names = {p.info["pid"]: p.info.get("name") or "" for p in procs}

        # cpu_percent needs two samples; prime every process, then read
        for proc in procs:
            try:
                proc.cpu_percent(None)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        psutil.cpu_percent(interval=0.2)

        exes = sorted({p.info.get("exe") for p in procs if p.info.get("exe")})
        hashes = {exe: file_md5(exe) for exe in exes} if self.config.hash_executables else {}
        signatures = dict(self.gather(
            "executable signatures", lambda: self.executable_signatures(exes).items()
        ))

        snapshots = []
        for proc in procs:
            info = proc.info
            try:
                cpu = proc.cpu_percent(None)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                cpu = 0.0
            exe = info.get("exe") or ""
            ctime = mtime = ""
            if exe:
                try:
                    st = os.stat(exe)
                    ctime, mtime = format_epoch(st.st_ctime), format_epoch(st.st_mtime)
                except OSError:
                    pass
            snapshots.append(ProcessSnapshot(
                pid=info["pid"],
                name=info.get("name") or "",
                ppid=info.get("ppid") or 0,
                parent_name=names.get(info.get("ppid"), ""),
                create_time=info.get("create_time") or 0.0,
                exe=exe,
                cmdline=" ".join(info.get("cmdline") or []),
                username=info.get("username") or "",
                file_ctime=ctime,
                file_mtime=mtime,
                md5=hashes.get(exe, ""),
                signature=signatures.get(exe, ""),
                cpu_percent=round(cpu, 2),
                mem_percent=round(info.get("memory_percent") or 0.0, 2),
            ))
        return snapshots

    # --- network ------------------------------------------------------------

    def network_info(self) -> list[NetworkSnapshot]:
        addrs = psutil.net_if_addrs()
        counters = psutil.net_io_counters(pernic=True)
        interfaces = []
        for name, entries in addrs.items():
            ip = mac = ""
            for entry in entries:
                if entry.family == psutil.AF_LINK and not mac:
                    mac = entry.address
                elif entry.family in (socket.AF_INET, socket.AF_INET6) and not ip:
                    if not entry.address.startswith(("127.", "::1")):
                        ip = entry.address.split("%", 1)[0]
            io = counters.get(name)
            interfaces.append(InterfaceStat(
                name=name,
                ip=ip,
                mac=mac,
                bytes_sent=io.bytes_sent if io else 0,
                bytes_recv=io.bytes_recv if io else 0,
                packets_sent=io.packets_sent if io else 0,
                packets_recv=io.packets_recv if io else 0,
            ))

        gateways = self.gather("default gateway", lambda: [self.gateway()])
        return [NetworkSnapshot(
            hostname=socket.gethostname(),
            gateway=gateways[0] if gateways else "",
            interfaces=tuple(interfaces),
        )]

    def network_connections(self) -> list[NetworkConnection]:
        try:
            conns = psutil.net_connections(kind="inet")
        except psutil.AccessDenied as e:
            raise PermissionDeniedError("Permission denied listing connections") from e

        def addr(a) -> str:
            if not a:
                return ""
            return f"{a.ip}:{a.port}"

        return [
            NetworkConnection(
                proto="tcp" if c.type == socket.SOCK_STREAM else "udp",
                local_addr=addr(c.laddr),
                remote_addr=addr(c.raddr),
                status=c.status,
                pid=c.pid or 0,
            )
            for c in conns
        ]

    # --- system -------------------------------------------------------------

    def system_info(self) -> list[SystemSnapshot]:
        disks = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError as e:
                logger.debug("Skipping disk %s: %s", part.mountpoint, e)
                continue
            disks.append(DiskUsage(
                mount_point=part.mountpoint,
                total_size=usage.total,
                used_size=usage.used,
                free_size=usage.free,
                usage=usage.percent,
            ))

        mem = psutil.virtual_memory()
        return [SystemSnapshot(
            hostname=socket.gethostname(),
            os=platform.system().lower(),
            arch=platform.machine(),
            cpu_cores=psutil.cpu_count(logical=True) or 0,
            kernel_version=platform.release(),
            cpu_usage=psutil.cpu_percent(interval=0.5),
            total_memory=mem.total,
            memory_usage=mem.percent,
            disks=tuple(disks),
        )]

    # --- sensitive files ----------------------------------------------------

    def stat_file(self, path: str, description: str = "") -> FileStatus:
        """Metadata snapshot of one path. Missing paths yield exists=False."""
        target = Path(path) if self.root == Path("/") else self.host_path(path)
        try:
            st = os.lstat(target)
        except FileNotFoundError:
            return FileStatus(path=path, exists=False, description=description)
        is_link = stat.S_ISLNK(st.st_mode)
        if is_link:
            try:
                st = os.stat(target)
            except OSError:
                pass
        owner, group = self.file_owner(st)
        birth = getattr(st, "st_birthtime", None)
        return FileStatus(
            path=path,
            exists=True,
            size=st.st_size,
            mode=stat.filemode(st.st_mode),
            mod_time=format_epoch(st.st_mtime),
            create_time=format_epoch(birth) if birth else "",
            access_time=format_epoch(st.st_atime),
            change_time=format_epoch(st.st_ctime),
            is_dir=stat.S_ISDIR(st.st_mode),
            is_symlink=is_link,
            owner=owner,
            group=group,
            permissions=oct(stat.S_IMODE(st.st_mode)),
            description=description,
        )

    def file_monitor(self) -> list[FileStatus]:
        records = []
        for path, description in self.sensitive_files().items():
            records.extend(self.gather(path, lambda p=path, d=description: [self.stat_file(p, d)]))
        return records
