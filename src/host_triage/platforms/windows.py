"""Windows collection strategy.

WMI and COM objects are only valid between CoInitialize and CoUninitialize
on the calling thread, so every query runs inside wmi_session() /
com_session() and copies what it needs into plain dicts before the session
closes. pywin32 and wmi are imported lazily; the parsing helpers in this
module work on any OS.
"""

from __future__ import annotations

import concurrent.futures
import getpass
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from xml.parsers.expat import ExpatError

import xmltodict

from ..evtx import event_from_dict, logon_type_label
from ..exceptions import CommandError, CommandTimeoutError, FormatError, NotFoundError
from ..models import CronEntry, LoginEvent, PatchRecord, RdpSession, StartupItem, UserAccount
from ..normalize import (
    dedupe,
    extract_after,
    extract_last_after,
    normalize_timestamp,
    parse_window,
    sort_by_time,
)
from ..shell_history import build_history, parse_plain_history
from .base import LocalHostStrategy, format_epoch

logger = logging.getLogger(__name__)

LOGON_EVENT_PROPS = ("TimeGenerated", "EventCode", "Type", "SourceName", "Message")

RDP_CHANNELS = (
    "Microsoft-Windows-RemoteDesktopServices-RdpCoreTS/Operational",
    "Microsoft-Windows-TerminalServices-LocalSessionManager/Operational",
)

# LocalSessionManager / RdpCoreTS event ids without an explicit status field
RDP_EVENT_STATUS = {
    21: "logon",
    22: "shell start",
    23: "logoff",
    24: "disconnected",
    25: "reconnected",
    131: "connection accepted",
    140: "failed",
}

TASK_STATES = {0: "Unknown", 1: "Disabled", 2: "Queued", 3: "Ready", 4: "Running"}

RUN_KEYS = (
    ("HKLM", r"Software\Microsoft\Windows\CurrentVersion\Run"),
    ("HKLM", r"Software\Microsoft\Windows\CurrentVersion\RunOnce"),
    ("HKLM", r"Software\WOW6432Node\Microsoft\Windows\CurrentVersion\Run"),
    ("HKCU", r"Software\Microsoft\Windows\CurrentVersion\Run"),
    ("HKCU", r"Software\Microsoft\Windows\CurrentVersion\RunOnce"),
)

_SIGNATURE_BATCH = 50


def _system_root() -> str:
    return os.environ.get("SystemRoot", r"C:\Windows")


def sensitive_file_map() -> dict[str, str]:
    root = _system_root()
    logs = rf"{root}\System32\winevt\Logs"
    return {
        rf"{root}\System32\config\SAM": "Security Accounts Manager hive",
        rf"{root}\System32\config\SYSTEM": "System configuration hive",
        rf"{root}\System32\config\SECURITY": "Security policy hive",
        rf"{root}\System32\config\SOFTWARE": "Software configuration hive",
        rf"{root}\System32\config\DEFAULT": "Default user hive",
        rf"{root}\System32\drivers\etc\hosts": "Static hostname resolution",
        rf"{root}\System32\drivers\etc\networks": "Network name definitions",
        rf"{root}\System32\drivers\etc\protocol": "Protocol definitions",
        rf"{root}\System32\drivers\etc\services": "Service port definitions",
        rf"{logs}\Security.evtx": "Security event log",
        rf"{logs}\System.evtx": "System event log",
        rf"{logs}\Application.evtx": "Application event log",
        rf"{logs}\Setup.evtx": "Setup event log",
        rf"{logs}\Microsoft-Windows-PowerShell%4Operational.evtx": "PowerShell operational log",
        rf"{logs}\Microsoft-Windows-TaskScheduler%4Operational.evtx": "Task Scheduler log",
        rf"{logs}\Microsoft-Windows-Windows Defender%4Operational.evtx": "Windows Defender log",
        rf"{logs}\Microsoft-Windows-RemoteDesktopServices-RdpCoreTS%4Operational.evtx": "Remote Desktop log",
    }


# =============================================================================
# Scoped COM / WMI sessions
# =============================================================================


@contextmanager
def wmi_session(namespace: str = r"root\cimv2"):
    """Yield a WMI connection, releasing COM on every exit path."""
    import pythoncom
    import wmi

    pythoncom.CoInitialize()
    try:
        try:
            conn = wmi.WMI(namespace=namespace)
        except wmi.x_wmi as e:
            raise CommandError(f"WMI connection failed: {e}") from e
        yield conn
    finally:
        pythoncom.CoUninitialize()


@contextmanager
def com_session(prog_id: str):
    """Yield a dispatched COM object, releasing COM on every exit path."""
    import pythoncom
    import pywintypes
    import win32com.client

    pythoncom.CoInitialize()
    obj = None
    try:
        try:
            obj = win32com.client.Dispatch(prog_id)
        except pywintypes.com_error as e:
            raise CommandError(f"Cannot create {prog_id}: {e}") from e
        yield obj
    finally:
        obj = None
        pythoncom.CoUninitialize()


# =============================================================================
# Parsers (OS independent)
# =============================================================================


def cim_datetime(value: datetime) -> str:
    """UTC CIM datetime for WQL comparisons, e.g. 20240529103600.000000+000."""
    return value.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S.000000+000")


def _clean(value: str) -> str:
    return "" if value in ("", "-") else value


def login_event_from_wmi(row: dict[str, Any], success: bool) -> LoginEvent:
    """Build a LoginEvent from a Win32_NTLogEvent row."""
    message = str(row.get("Message") or "")
    logon_type = extract_after(message, "Logon Type:")
    return LoginEvent(
        time=normalize_timestamp(row.get("TimeGenerated")),
        event_id=str(row.get("EventCode") or ("4624" if success else "4625")),
        event_type=logon_type_label(logon_type) if logon_type else str(row.get("Type") or ""),
        source=str(row.get("SourceName") or ""),
        username=_clean(extract_last_after(message, "Account Name:")) or "unknown",
        ip_address=_clean(extract_after(message, "Source Network Address:")) or "local",
        reason="" if success else extract_after(message, "Failure Reason:"),
        success=success,
    )


def patch_from_wmi(row: dict[str, Any]) -> PatchRecord:
    """Build a PatchRecord from a Win32_QuickFixEngineering row."""
    hotfix = str(row.get("HotFixID") or "")
    description = str(row.get("Description") or "")
    installed_by = row.get("InstalledBy")
    if installed_by:
        description = f"{description} (installed by {installed_by})".strip()
    return PatchRecord(
        time=normalize_timestamp(row.get("InstalledOn")),
        title=hotfix,
        description=description,
        status="Installed",
        kb=hotfix[2:] if hotfix.upper().startswith("KB") else hotfix,
    )


def format_task_line(task: dict[str, Any]) -> str:
    state = task.get("state")
    state_name = TASK_STATES.get(state, str(state)) if isinstance(state, int) else str(state)
    return (
        f"TaskName: {task.get('name', '')}; State: {state_name}; "
        f"LastRunTime: {task.get('last_run', '')}; NextRunTime: {task.get('next_run', '')}"
    )


def parse_wevtutil_rdp(xml_text: str) -> list[RdpSession]:
    """RDP sessions from `wevtutil qe ... /f:xml` output (concatenated <Event> elements)."""
    if not xml_text.strip():
        return []
    try:
        doc = xmltodict.parse(f"<Events>{xml_text}</Events>")
    except ExpatError as e:
        raise FormatError(f"Unexpected wevtutil output: {e}") from e

    events = (doc.get("Events") or {}).get("Event") or []
    if isinstance(events, dict):
        events = [events]

    sessions = []
    for raw in events:
        event = event_from_dict(raw)
        data = {**event.user_data, **event.event_data}
        username = data.get("User") or data.get("UserName") or data.get("Param1") or "unknown"
        ip = data.get("Address") or data.get("ClientIP") or data.get("IPString") or "unknown"
        status = data.get("Status") or RDP_EVENT_STATUS.get(event.event_id, f"event {event.event_id}")
        sessions.append(RdpSession(
            time=event.time,
            username=username,
            ip=ip,
            status=status,
            description=f"User {username} attempted login from {ip}",
        ))
    return sessions


def parse_route_print(text: str) -> str:
    """Default gateway from `route print -4 0.0.0.0`."""
    for line in text.splitlines():
        cols = line.split()
        if len(cols) >= 3 and cols[0] == "0.0.0.0" and cols[1] == "0.0.0.0":
            return cols[2]
    return ""


def parse_signature_lines(text: str) -> dict[str, str]:
    """"<path>|<status>|<subject>" lines written by the signature query."""
    signatures = {}
    for line in text.splitlines():
        parts = line.strip().split("|", 2)
        if len(parts) != 3:
            continue
        path, status, subject = parts
        signatures[path] = subject if status == "Valid" and subject else status
    return signatures


class WindowsStrategy(LocalHostStrategy):
    name = "windows"

    # --- session-backed sources (overridden in tests) -----------------------

    def wmi_query(self, wql: str, props: tuple[str, ...]) -> list[dict[str, Any]]:
        """Run wmi_rows() on a worker thread, bounded by command_timeout.

        Raises:
            CommandTimeoutError: The query did not finish in time. The worker
                is abandoned and exits once WMI returns.
        """
        timeout = self.config.command_timeout
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="wmi")
        future = pool.submit(self.wmi_rows, wql, props)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise CommandTimeoutError(f"WMI query timed out after {timeout}s: {wql}") from None
        finally:
            pool.shutdown(wait=False)

    def wmi_rows(self, wql: str, props: tuple[str, ...]) -> list[dict[str, Any]]:
        """Run a WQL query and copy ``props`` of each row into a dict."""
        import wmi

        with wmi_session() as conn:
            try:
                return [{p: getattr(obj, p, None) for p in props} for obj in conn.query(wql)]
            except wmi.x_wmi as e:
                raise CommandError(f"WMI query failed: {wql}: {e}") from e

    def scheduled_tasks(self) -> list[dict[str, Any]]:
        """Every registered task in every Task Scheduler folder."""
        import pywintypes

        tasks: list[dict[str, Any]] = []
        with com_session("Schedule.Service") as service:
            try:
                service.Connect()
                folders = [service.GetFolder("\\")]
                while folders:
                    folder = folders.pop()
                    # 1 = TASK_ENUM_HIDDEN
                    for task in folder.GetTasks(1):
                        tasks.append({
                            "name": task.Name,
                            "folder": folder.Path,
                            "state": task.State,
                            "last_run": str(task.LastRunTime),
                            "next_run": str(task.NextRunTime),
                        })
                    folders.extend(folder.GetFolders(0))
            except pywintypes.com_error as e:
                raise CommandError(f"Task Scheduler query failed: {e}") from e
        return tasks

    def run_key_values(self) -> list[tuple[str, str, str, str]]:
        """(hive, key, value name, command) for each autorun registry value."""
        import winreg

        hives = {"HKLM": winreg.HKEY_LOCAL_MACHINE, "HKCU": winreg.HKEY_CURRENT_USER}
        values = []
        for hive, key_path in RUN_KEYS:
            try:
                with winreg.OpenKey(hives[hive], key_path) as key:
                    count = winreg.QueryInfoKey(key)[1]
                    for idx in range(count):
                        name, data, _ = winreg.EnumValue(key, idx)
                        values.append((hive, key_path, name, str(data)))
            except FileNotFoundError:
                continue
        return values

    # --- hooks --------------------------------------------------------------

    def current_user(self) -> str:
        return getpass.getuser()

    def gateway(self) -> str:
        return parse_route_print(self.run(["route", "print", "-4", "0.0.0.0"]))

    def executable_signatures(self, paths: list[str]) -> dict[str, str]:
        signatures: dict[str, str] = {}
        for start in range(0, len(paths), _SIGNATURE_BATCH):
            batch = paths[start:start + _SIGNATURE_BATCH]
            quoted = ",".join("'" + p.replace("'", "''") + "'" for p in batch)
            script = (
                f"Get-AuthenticodeSignature -FilePath {quoted} | ForEach-Object "
                "{ \"$($_.Path)|$($_.Status)|$($_.SignerCertificate.Subject)\" }"
            )
            out = self.run(["powershell", "-NoProfile", "-NonInteractive", "-Command", script])
            signatures.update(parse_signature_lines(out))
        return signatures

    def sensitive_files(self) -> dict[str, str]:
        return sensitive_file_map()

    # --- logins ------------------------------------------------------------

    def _logon_events(self, event_code: int, success: bool) -> list[LoginEvent]:
        since = datetime.now(timezone.utc) - parse_window(self.config.log_window)
        rows = self.wmi_query(
            "SELECT TimeGenerated, EventCode, Type, SourceName, Message "
            f"FROM Win32_NTLogEvent WHERE Logfile='Security' AND EventCode={event_code} "
            f"AND TimeGenerated >= '{cim_datetime(since)}'",
            LOGON_EVENT_PROPS,
        )
        return [login_event_from_wmi(row, success) for row in rows]

    def login_failed(self) -> list[LoginEvent]:
        # Win32_NTLogEvent returns newest first
        records = self._logon_events(4625, success=False)
        return sort_by_time(dedupe(records, key=lambda r: (r.time, r.username)))

    def login_success(self) -> list[LoginEvent]:
        return sort_by_time(self._logon_events(4624, success=True))

    # --- rdp ---------------------------------------------------------------

    def _rdp_channel(self, channel: str) -> list[RdpSession]:
        out = self.run([
            "wevtutil", "qe", channel, "/f:xml", "/rd:true",
            f"/c:{self.config.rdp_max_events}",
        ])
        return parse_wevtutil_rdp(out)

    def rdp_sessions(self) -> list[RdpSession]:
        sessions: list[RdpSession] = []
        for channel in RDP_CHANNELS:
            sessions.extend(self.gather(channel, self._rdp_channel, channel))
        return sort_by_time(sessions)

    # --- patches / users / tasks -------------------------------------------

    def patches(self) -> list[PatchRecord]:
        rows = self.wmi_query(
            "SELECT HotFixID, Description, InstalledOn, InstalledBy FROM Win32_QuickFixEngineering",
            ("HotFixID", "Description", "InstalledOn", "InstalledBy"),
        )
        return sort_by_time([patch_from_wmi(row) for row in rows])

    def users(self) -> list[UserAccount]:
        rows = self.wmi_query(
            "SELECT Name, SID, FullName FROM Win32_UserAccount",
            ("Name", "SID", "FullName"),
        )
        return [
            UserAccount(username=str(r.get("Name") or ""), uid=str(r.get("SID") or ""),
                        name=str(r.get("FullName") or ""))
            for r in rows
        ]

    def cron_entries(self) -> list[CronEntry]:
        return [
            CronEntry(line=format_task_line(task), source=task.get("folder") or "\\")
            for task in self.scheduled_tasks()
        ]

    # --- startup -----------------------------------------------------------

    def _startup_folders(self) -> list[tuple[Path, str]]:
        folders = []
        appdata = os.environ.get("APPDATA")
        if appdata:
            folders.append((
                Path(appdata) / "Microsoft" / "Windows" / "Start Menu" / "Programs" / "Startup",
                "UserStartup",
            ))
        programdata = os.environ.get("PROGRAMDATA")
        if programdata:
            folders.append((
                Path(programdata) / "Microsoft" / "Windows" / "Start Menu" / "Programs" / "StartUp",
                "SystemStartup",
            ))
        return folders

    def _startup_folder(self, folder: Path, kind: str) -> list[StartupItem]:
        if not folder.is_dir():
            raise NotFoundError(f"{folder} does not exist")
        items = []
        for path in sorted(folder.iterdir()):
            if not path.is_file() or path.name.lower() == "desktop.ini":
                continue
            st = path.stat()
            items.append(StartupItem(
                name=path.name,
                path=str(path),
                type=kind,
                enabled=True,
                last_mod_time=format_epoch(st.st_mtime),
                size=st.st_size,
                description=f"{kind} folder entry",
            ))
        return items

    def _run_keys(self) -> list[StartupItem]:
        return [
            StartupItem(
                name=name,
                path=command,
                type="RegistryRun",
                enabled=True,
                description=f"{hive}\\{key}",
            )
            for hive, key, name, command in self.run_key_values()
        ]

    def startup_items(self) -> list[StartupItem]:
        items: list[StartupItem] = []
        for folder, kind in self._startup_folders():
            items.extend(self.gather(str(folder), self._startup_folder, folder, kind))
        items.extend(self.gather("registry Run keys", self._run_keys))
        return items

    # --- shell history -----------------------------------------------------

    def _psreadline_history(self) -> list:
        appdata = os.environ.get("APPDATA")
        if not appdata:
            raise NotFoundError("APPDATA is not set")
        path = (Path(appdata) / "Microsoft" / "Windows" / "PowerShell" / "PSReadLine"
                / "ConsoleHost_history.txt")
        return parse_plain_history(self.read_text(path))

    def shell_history(self) -> list:
        entries = self.gather("PSReadLine history", self._psreadline_history)
        sources = [("powershell", entries)] if entries else []
        return build_history(sources, user=self.current_user(), current_shell="powershell")
