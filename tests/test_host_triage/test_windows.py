"""Tests for the Windows strategy.

WMI, Task Scheduler and registry access are replaced by overriding the
session-backed methods, so these tests run on any OS.
"""

import re
import sys
import threading
import types
from datetime import datetime, timedelta, timezone

import pytest

from host_triage.collectors import CollectionContext, collect
from host_triage.config import Config
from host_triage.exceptions import CommandError, CommandTimeoutError, FormatError
from host_triage.models import ArtifactKind
from host_triage.normalize import normalize_timestamp
from host_triage.platforms.windows import (
    RDP_CHANNELS,
    RUN_KEYS,
    WindowsStrategy,
    cim_datetime,
    format_task_line,
    login_event_from_wmi,
    parse_route_print,
    parse_signature_lines,
    parse_wevtutil_rdp,
    patch_from_wmi,
    sensitive_file_map,
    wmi_session,
)

FAILED_LOGON_MESSAGE = """\
An account failed to log on.

Subject:
\tSecurity ID:\t\tS-1-0-0
\tAccount Name:\t\t-
\tAccount Domain:\t\t-
\tLogon ID:\t\t0x0

Logon Type:\t\t\t10

Account For Which Logon Failed:
\tSecurity ID:\t\tS-1-0-0
\tAccount Name:\t\tadmin
\tAccount Domain:\t\tWIN

Failure Information:
\tFailure Reason:\t\tUnknown user name or bad password.
\tStatus:\t\t\t0xC000006D

Network Information:
\tWorkstation Name:\tKALI
\tSource Network Address:\t203.0.113.9
\tSource Port:\t\t0
"""

SUCCESS_LOGON_MESSAGE = """\
An account was successfully logged on.

Subject:
\tAccount Name:\t\tWIN$

Logon Type:\t\t\t2

New Logon:
\tAccount Name:\t\talice

Network Information:
\tSource Network Address:\t-
"""

FAILED_ROW = {
    "TimeGenerated": "20240529103600.000000-000",
    "EventCode": 4625,
    "Type": "Audit Failure",
    "SourceName": "Microsoft-Windows-Security-Auditing",
    "Message": FAILED_LOGON_MESSAGE,
}

SUCCESS_ROW = {
    "TimeGenerated": "20240529090000.000000-000",
    "EventCode": 4624,
    "Type": "Audit Success",
    "SourceName": "Microsoft-Windows-Security-Auditing",
    "Message": SUCCESS_LOGON_MESSAGE,
}

WEVTUTIL_XML = r"""<Event xmlns='http://schemas.microsoft.com/win/2004/08/events/event'><System><Provider Name='Microsoft-Windows-TerminalServices-LocalSessionManager'/><EventID>21</EventID><Level>4</Level><TimeCreated SystemTime='2024-05-29T10:36:00.000Z'/><EventRecordID>42</EventRecordID><Channel>Microsoft-Windows-TerminalServices-LocalSessionManager/Operational</Channel><Computer>WIN</Computer></System><UserData><EventXML xmlns='Event_NS'><User>WIN\admin</User><SessionID>2</SessionID><Address>203.0.113.9</Address></EventXML></UserData></Event>
<Event xmlns='http://schemas.microsoft.com/win/2004/08/events/event'><System><Provider Name='Microsoft-Windows-RemoteDesktopServices-RdpCoreTS'/><EventID>131</EventID><Level>4</Level><TimeCreated SystemTime='2024-05-29T10:35:58.000Z'/><Channel>Microsoft-Windows-RemoteDesktopServices-RdpCoreTS/Operational</Channel><Computer>WIN</Computer></System><EventData><Data Name='ConnType'>TCP</Data><Data Name='ClientIP'>203.0.113.9:50123</Data></EventData></Event>
"""


class FakeWindows(WindowsStrategy):
    """WindowsStrategy with WMI, Task Scheduler and registry stubbed out.

    ``wmi_rows`` maps a substring of the WQL query to the rows it returns.
    """

    def __init__(self, *, wmi_rows=None, tasks=None, run_values=None, **kwargs):
        super().__init__(**kwargs)
        self.rows_by_query = wmi_rows or {}
        self.tasks = tasks or []
        self.run_values = run_values or []
        self.queries = []

    def wmi_rows(self, wql, props):
        self.queries.append(wql)
        for fragment, rows in self.rows_by_query.items():
            if fragment in wql:
                return [{p: row.get(p) for p in props} for row in rows]
        return []

    def scheduled_tasks(self):
        return list(self.tasks)

    def run_key_values(self):
        if isinstance(self.run_values, Exception):
            raise self.run_values
        return list(self.run_values)


@pytest.fixture
def make_windows(fake_runner, tmp_path):
    def factory(**kwargs):
        return FakeWindows(root=tmp_path, home=tmp_path, runner=fake_runner, **kwargs)
    return factory


class TestParsers:
    def test_failed_logon(self):
        event = login_event_from_wmi(FAILED_ROW, success=False)
        assert event.username == "admin"
        assert event.ip_address == "203.0.113.9"
        assert event.event_type == "Remote interactive (RDP)"
        assert event.reason == "Unknown user name or bad password."
        assert event.event_id == "4625"
        assert event.source == "Microsoft-Windows-Security-Auditing"
        assert event.success is False
        assert event.time == normalize_timestamp("20240529103600.000000-000")

    def test_successful_logon(self):
        event = login_event_from_wmi(SUCCESS_ROW, success=True)
        assert event.username == "alice"
        assert event.ip_address == "local"
        assert event.event_type == "Local interactive"
        assert event.reason == ""

    def test_logon_without_message(self):
        event = login_event_from_wmi({"Type": "Audit Failure"}, success=False)
        assert event.username == "unknown"
        assert event.event_type == "Audit Failure"
        assert event.event_id == "4625"

    def test_patch(self):
        patch = patch_from_wmi({
            "HotFixID": "KB5034441",
            "Description": "Security Update",
            "InstalledOn": "5/29/2024",
            "InstalledBy": "NT AUTHORITY\\SYSTEM",
        })
        assert patch.kb == "5034441"
        assert patch.title == "KB5034441"
        assert patch.time == "2024-05-29 00:00:00"
        assert patch.description == "Security Update (installed by NT AUTHORITY\\SYSTEM)"
        assert patch.status == "Installed"

    def test_task_line(self):
        line = format_task_line({
            "name": "Updater", "state": 3,
            "last_run": "2024-05-29 10:36:00", "next_run": "2024-05-30 10:36:00",
        })
        assert line == (
            "TaskName: Updater; State: Ready; "
            "LastRunTime: 2024-05-29 10:36:00; NextRunTime: 2024-05-30 10:36:00"
        )

    def test_task_line_unknown_state(self):
        assert "State: 9;" in format_task_line({"name": "x", "state": 9})

    def test_wevtutil_rdp(self):
        sessions = parse_wevtutil_rdp(WEVTUTIL_XML)
        assert len(sessions) == 2
        logon, accepted = sessions
        assert logon.username == "WIN\\admin"
        assert logon.ip == "203.0.113.9"
        assert logon.status == "logon"
        assert logon.description == "User WIN\\admin attempted login from 203.0.113.9"
        assert logon.time == normalize_timestamp("2024-05-29T10:36:00.000Z")
        assert accepted.username == "unknown"
        assert accepted.ip == "203.0.113.9:50123"
        assert accepted.status == "connection accepted"

    def test_wevtutil_empty(self):
        assert parse_wevtutil_rdp("\r\n") == []

    def test_wevtutil_malformed(self):
        with pytest.raises(FormatError, match="Unexpected wevtutil output"):
            parse_wevtutil_rdp("<Event><System>")

    def test_route_print(self):
        text = (
            "===========================================================================\n"
            "IPv4 Route Table\n"
            "Active Routes:\n"
            "Network Destination        Netmask          Gateway       Interface  Metric\n"
            "          0.0.0.0          0.0.0.0      192.168.1.1    192.168.1.50     25\n"
        )
        assert parse_route_print(text) == "192.168.1.1"
        assert parse_route_print("") == ""

    def test_cim_datetime(self):
        value = datetime(2024, 5, 29, 18, 36, tzinfo=timezone(timedelta(hours=8)))
        assert cim_datetime(value) == "20240529103600.000000+000"

    def test_signature_lines(self):
        text = (
            "C:\\Windows\\notepad.exe|Valid|CN=Microsoft Windows, O=Microsoft Corporation\n"
            "C:\\Temp\\x.exe|NotSigned|\n"
            "WARNING: something unrelated\n"
        )
        assert parse_signature_lines(text) == {
            "C:\\Windows\\notepad.exe": "CN=Microsoft Windows, O=Microsoft Corporation",
            "C:\\Temp\\x.exe": "NotSigned",
        }

    def test_sensitive_file_map(self, monkeypatch):
        monkeypatch.setenv("SystemRoot", "D:\\Win")
        paths = sensitive_file_map()
        assert "D:\\Win\\System32\\config\\SAM" in paths
        assert all(p.startswith("D:\\Win\\") for p in paths)


class TestWindowsStrategy:
    def test_login_failed_dedupes(self, make_windows):
        windows = make_windows(wmi_rows={"EventCode=4625": [FAILED_ROW, FAILED_ROW]})
        records = windows.login_failed()
        assert len(records) == 1
        assert records[0].username == "admin"
        assert "Logfile='Security'" in windows.queries[0]

    def test_logon_query_bounded_by_window(self, make_windows, tmp_path):
        windows = make_windows(config=Config(data_dir=tmp_path, log_window="2h"))
        windows.login_failed()
        m = re.search(r"TimeGenerated >= '(\d{14})\.000000\+000'", windows.queries[0])
        assert m
        since = datetime.strptime(m.group(1), "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
        expected = datetime.now(timezone.utc) - timedelta(hours=2)
        assert abs(since - expected) < timedelta(minutes=1)

    def test_wmi_query_deadline(self, fake_runner, tmp_path):
        release = threading.Event()

        class StalledWindows(FakeWindows):
            def wmi_rows(self, wql, props):
                release.wait(10)
                return []

        windows = StalledWindows(root=tmp_path, home=tmp_path, runner=fake_runner,
                                 config=Config(data_dir=tmp_path, command_timeout=1))
        try:
            with pytest.raises(CommandTimeoutError, match="timed out after 1s"):
                windows.wmi_query("SELECT EventCode FROM Win32_NTLogEvent", ("EventCode",))
            assert collect(ArtifactKind.LOGIN_FAILED, CollectionContext(strategy=windows)) == []
        finally:
            release.set()

    def test_login_success(self, make_windows):
        windows = make_windows(wmi_rows={"EventCode=4624": [SUCCESS_ROW]})
        assert [r.username for r in windows.login_success()] == ["alice"]

    def test_patches_sorted(self, make_windows):
        windows = make_windows(wmi_rows={"Win32_QuickFixEngineering": [
            {"HotFixID": "KB2", "InstalledOn": "6/1/2024"},
            {"HotFixID": "KB1", "InstalledOn": "5/1/2024"},
        ]})
        assert [p.kb for p in windows.patches()] == ["1", "2"]

    def test_users(self, make_windows):
        windows = make_windows(wmi_rows={"Win32_UserAccount": [
            {"Name": "Administrator", "SID": "S-1-5-21-1-500", "FullName": None},
        ]})
        user = windows.users()[0]
        assert user.username == "Administrator"
        assert user.uid == "S-1-5-21-1-500"
        assert user.name == ""

    def test_cron_entries(self, make_windows):
        windows = make_windows(tasks=[
            {"name": "Updater", "folder": "\\Microsoft", "state": 4, "last_run": "", "next_run": ""},
            {"name": "Root", "folder": "", "state": 1, "last_run": "", "next_run": ""},
        ])
        entries = windows.cron_entries()
        assert entries[0].source == "\\Microsoft"
        assert entries[0].line.startswith("TaskName: Updater; State: Running;")
        assert entries[1].source == "\\"

    def test_rdp_sessions(self, make_windows, fake_runner):
        fake_runner.outputs[f"wevtutil qe {RDP_CHANNELS[1]}"] = WEVTUTIL_XML
        windows = make_windows()
        sessions = windows.rdp_sessions()
        assert [s.status for s in sessions] == ["connection accepted", "logon"]
        cmd = fake_runner.calls[-1]
        assert f"/c:{windows.config.rdp_max_events}" in cmd
        assert "/rd:true" in cmd

    def test_startup_items(self, make_windows, tmp_path, monkeypatch):
        appdata = tmp_path / "appdata"
        startup = appdata / "Microsoft" / "Windows" / "Start Menu" / "Programs" / "Startup"
        startup.mkdir(parents=True)
        (startup / "desktop.ini").write_text("[.ShellClassInfo]\n")
        (startup / "evil.lnk").write_bytes(b"L\x00\x00\x00")
        monkeypatch.setenv("APPDATA", str(appdata))
        monkeypatch.delenv("PROGRAMDATA", raising=False)
        run_key = RUN_KEYS[3][1]
        windows = make_windows(run_values=[("HKCU", run_key, "Updater", "C:\\Temp\\upd.exe")])

        items = windows.startup_items()
        assert [i.name for i in items] == ["evil.lnk", "Updater"]
        assert items[0].type == "UserStartup"
        assert items[0].size == 4
        assert items[1].type == "RegistryRun"
        assert items[1].path == "C:\\Temp\\upd.exe"
        assert items[1].description == f"HKCU\\{run_key}"

    def test_registry_failure_absorbed(self, make_windows, monkeypatch):
        monkeypatch.delenv("APPDATA", raising=False)
        monkeypatch.delenv("PROGRAMDATA", raising=False)
        windows = make_windows(run_values=PermissionError("access denied"))
        assert windows.startup_items() == []

    def test_shell_history(self, make_windows, tmp_path, monkeypatch):
        appdata = tmp_path / "appdata"
        history = appdata / "Microsoft" / "Windows" / "PowerShell" / "PSReadLine"
        history.mkdir(parents=True)
        (history / "ConsoleHost_history.txt").write_text("whoami\nipconfig /all\nwhoami\n")
        monkeypatch.setenv("APPDATA", str(appdata))
        records = make_windows().shell_history()
        assert [r.command for r in records] == ["whoami", "ipconfig /all"]
        assert {r.shell for r in records} == {"powershell"}

    def test_shell_history_without_appdata(self, make_windows, monkeypatch):
        monkeypatch.delenv("APPDATA", raising=False)
        assert make_windows().shell_history() == []

    def test_gateway(self, make_windows, fake_runner):
        fake_runner.outputs["route print"] = (
            "          0.0.0.0          0.0.0.0         10.0.0.1       10.0.0.5     25\n"
        )
        assert make_windows().gateway() == "10.0.0.1"

    def test_executable_signatures_batched(self, make_windows, fake_runner):
        fake_runner.outputs["powershell"] = "C:\\a.exe|Valid|CN=Vendor\n"
        paths = [f"C:\\bin\\{i}.exe" for i in range(120)]
        signatures = make_windows().executable_signatures(paths)
        assert len(fake_runner.calls) == 3
        assert signatures == {"C:\\a.exe": "CN=Vendor"}


class FakeComModule(types.ModuleType):
    def __init__(self):
        super().__init__("pythoncom")
        self.initialized = 0
        self.released = 0

    def CoInitialize(self):
        self.initialized += 1

    def CoUninitialize(self):
        self.released += 1


def _fake_wmi(connection=None, error=None):
    module = types.ModuleType("wmi")

    class x_wmi(Exception):
        pass

    def WMI(namespace=None):
        if error:
            raise x_wmi(error)
        return connection

    module.x_wmi = x_wmi
    module.WMI = WMI
    return module


class TestWmiSession:
    def test_releases_com_on_error(self, monkeypatch):
        com = FakeComModule()
        monkeypatch.setitem(sys.modules, "pythoncom", com)
        monkeypatch.setitem(sys.modules, "wmi", _fake_wmi(connection=object()))
        with pytest.raises(RuntimeError):
            with wmi_session():
                raise RuntimeError("query blew up")
        assert com.initialized == 1
        assert com.released == 1

    def test_connection_failure(self, monkeypatch):
        com = FakeComModule()
        monkeypatch.setitem(sys.modules, "pythoncom", com)
        monkeypatch.setitem(sys.modules, "wmi", _fake_wmi(error="RPC server unavailable"))
        with pytest.raises(CommandError, match="WMI connection failed"):
            with wmi_session():
                pass
        assert com.released == 1

    def test_wmi_query_copies_properties(self, monkeypatch, fake_runner, tmp_path):
        row = types.SimpleNamespace(Name="Administrator", SID="S-1-5-21-1-500")

        class Connection:
            def query(self, wql):
                return [row]

        com = FakeComModule()
        monkeypatch.setitem(sys.modules, "pythoncom", com)
        monkeypatch.setitem(sys.modules, "wmi", _fake_wmi(connection=Connection()))
        windows = WindowsStrategy(root=tmp_path, home=tmp_path, runner=fake_runner)
        rows = windows.wmi_query("SELECT * FROM Win32_UserAccount", ("Name", "SID", "FullName"))
        assert rows == [{"Name": "Administrator", "SID": "S-1-5-21-1-500", "FullName": None}]
        assert com.released == 1
