"""Tests for the macOS strategy."""

import json
import os
import plistlib

import pytest

from host_triage.exceptions import FormatError
from host_triage.normalize import normalize_timestamp
from host_triage.platforms.darwin import (
    LOGIN_FAILURE_PREDICATES,
    MacOSStrategy,
    describe_launchd_plist,
    parse_dscacheutil_users,
    parse_last_output,
    parse_softwareupdate_history,
    parse_unified_log_failures,
)

UNIFIED_LOG = json.dumps([
    {
        "timestamp": "2024-05-29 10:36:00.123456+0000",
        "subsystem": "com.apple.authentication",
        "eventMessage": "Failed to authenticate for user alice reason: bad password",
    },
    {
        "timestamp": "2024-05-29 10:37:00.000000+0000",
        "subsystem": "com.apple.security",
        "eventMessage": "Session started",
    },
])

LAST_OUTPUT = """\
alice     ttys000  192.168.1.20     Wed May 29 10:36 - 11:00  (00:24)
bob       console                   Wed May 29 09:00   still logged in
reboot    ~                         Wed May 29 08:59

wtmp begins Wed May 29 08:00
"""

SOFTWAREUPDATE = """\
Display Name                                       Version    Date
------------------------------------------------   --------   --------------------
macOS Sonoma 14.5                                  14.5       05/29/2024, 10:36:00
XProtectPayloads                                   2195       05/30/2024, 01:02:03
"""

DSCACHEUTIL = """\
name: alice
password: ********
uid: 501
gid: 20
dir: /Users/alice
shell: /bin/zsh
gecos: Alice Example

name: _spotlight
password: *
uid: 89
gid: 89
dir: /var/empty
shell: /usr/bin/false
gecos: Spotlight
"""


@pytest.fixture
def macos(fake_root, fake_home, fake_runner):
    return MacOSStrategy(root=fake_root.path, home=fake_home.path, runner=fake_runner)


class TestUnifiedLog:
    def test_failure_fields(self):
        records = parse_unified_log_failures(UNIFIED_LOG)
        assert len(records) == 1
        r = records[0]
        assert r.username == "alice"
        assert r.reason == "bad password"
        assert r.event_type == "com.apple.authentication"
        assert r.ip_address == "local"
        assert r.success is False
        assert r.time == normalize_timestamp("2024-05-29 10:36:00.123456+0000")

    def test_empty_output(self):
        assert parse_unified_log_failures("  \n") == []

    def test_malformed_output(self):
        with pytest.raises(FormatError, match="Unexpected log show output"):
            parse_unified_log_failures("not json")

    def test_unknown_user(self):
        text = json.dumps([{"timestamp": "2024-05-29 10:36:00", "eventMessage": "login failed"}])
        r = parse_unified_log_failures(text)[0]
        assert r.username == "unknown"
        assert r.reason == "login failed"
        assert r.event_type == "authentication"


class TestLastOutput:
    def test_sessions(self):
        records = parse_last_output(LAST_OUTPUT)
        assert [r.username for r in records] == ["alice", "bob"]
        alice, bob = records
        assert alice.ip_address == "192.168.1.20"
        assert alice.event_type == "logged out"
        assert alice.source == "/dev/ttys000"
        assert alice.time.endswith("-05-29 10:36:00")
        assert bob.ip_address == "local"
        assert bob.event_type == "still logged in"
        assert bob.success is True


class TestCommandParsers:
    def test_softwareupdate_history(self):
        records = parse_softwareupdate_history(SOFTWAREUPDATE)
        assert [r.title for r in records] == ["macOS Sonoma 14.5", "XProtectPayloads"]
        assert records[0].time == "2024-05-29 10:36:00"
        assert records[0].description == "Version 14.5"
        assert records[0].status == "Installed"

    def test_dscacheutil_users(self):
        users = parse_dscacheutil_users(DSCACHEUTIL)
        assert [u.username for u in users] == ["alice", "_spotlight"]
        assert users[0].uid == "501"
        assert users[0].home_dir == "/Users/alice"
        assert users[0].name == "Alice Example"

    @pytest.mark.parametrize("data,expected", [
        ({"Label": "com.evil.agent", "ProgramArguments": ["/tmp/x", "-d"]}, "com.evil.agent: /tmp/x -d"),
        ({"Label": "com.evil.agent", "Program": "/tmp/x"}, "com.evil.agent: /tmp/x"),
        ({"Label": "com.only.label"}, "com.only.label"),
        ({}, ""),
    ])
    def test_describe_launchd_plist(self, data, expected):
        assert describe_launchd_plist(data) == expected


class TestMacOSStrategy:
    def test_login_failed_dedupes_across_predicates(self, macos, fake_runner):
        fake_runner.outputs["log show"] = UNIFIED_LOG
        records = macos.login_failed()
        assert len(records) == 1
        assert records[0].username == "alice"
        assert len(fake_runner.calls) == len(LOGIN_FAILURE_PREDICATES)

    def test_log_show_uses_window(self, macos, fake_runner):
        fake_runner.outputs["log show"] = "[]"
        macos.login_failed()
        cmd = fake_runner.calls[0]
        assert cmd[cmd.index("--last") + 1] == macos.config.log_window
        assert cmd[cmd.index("--predicate") + 1] == LOGIN_FAILURE_PREDICATES[0]

    def test_login_failed_without_log_command(self, macos):
        assert macos.login_failed() == []

    def test_login_success(self, macos, fake_runner):
        fake_runner.outputs["last"] = LAST_OUTPUT
        assert [r.username for r in macos.login_success()] == ["bob", "alice"]

    def test_patches(self, macos, fake_runner):
        fake_runner.outputs["softwareupdate --history"] = SOFTWAREUPDATE
        assert len(macos.patches()) == 2

    def test_users_prefers_dscacheutil(self, macos, fake_runner, fake_root):
        fake_runner.outputs["dscacheutil -q user"] = DSCACHEUTIL
        fake_root.write("/etc/passwd", "root:*:0:0:System Administrator:/var/root:/bin/sh\n")
        assert [u.username for u in macos.users()] == ["alice", "_spotlight"]

    def test_users_falls_back_to_passwd(self, macos, fake_root):
        fake_root.write("/etc/passwd", "root:*:0:0:System Administrator:/var/root:/bin/sh\n")
        assert [u.username for u in macos.users()] == ["root"]

    def test_startup_items(self, macos, fake_root, fake_home):
        agent = fake_root.write("/Library/LaunchAgents/com.evil.agent.plist", "")
        agent.write_bytes(plistlib.dumps({
            "Label": "com.evil.agent",
            "ProgramArguments": ["/tmp/.hidden/agent", "--daemon"],
        }))
        fake_root.write("/Library/LaunchDaemons/broken.plist", "this is not a plist")
        disabled = fake_home.write("Library/LaunchAgents/com.user.sync.plist", "")
        disabled.write_bytes(plistlib.dumps({"Label": "com.user.sync", "Program": "/bin/sync", "Disabled": True}))

        items = {i.name: i for i in macos.startup_items()}
        assert items["com.evil.agent"].type == "LaunchAgent"
        assert items["com.evil.agent"].description == "com.evil.agent: /tmp/.hidden/agent --daemon"
        assert items["com.evil.agent"].enabled is True
        assert items["broken"].type == "LaunchDaemon"
        assert items["broken"].description == ""
        assert items["com.user.sync"].type == "UserLaunchAgent"
        assert items["com.user.sync"].enabled is False

    def test_dangling_plist_skips_only_itself(self, macos, fake_root):
        daemons = fake_root.mkdir("/Library/LaunchDaemons")
        os.symlink("/nonexistent/gone.plist", daemons / "a.gone.plist")
        (daemons / "b.kept.plist").write_bytes(plistlib.dumps({"Label": "com.kept", "Program": "/bin/true"}))
        assert [i.name for i in macos.startup_items()] == ["com.kept"]

    def test_executable_signature(self, macos, fake_runner):
        fake_runner.outputs["codesign"] = {
            "exit_code": 0,
            "stderr": "Executable=/bin/ls\nAuthority=Software Signing\nAuthority=Apple Root CA\n",
        }
        assert macos.executable_signature("/bin/ls") == "Software Signing"

    def test_unsigned_executable(self, macos, fake_runner):
        fake_runner.outputs["codesign"] = {
            "exit_code": 1,
            "stderr": "/tmp/x: code object is not signed at all\n",
        }
        assert macos.executable_signature("/tmp/x") == ""

    def test_gateway(self, macos, fake_runner):
        fake_runner.outputs["route -n get default"] = (
            "   route to: default\ndestination: default\n    gateway: 192.168.1.1\n  interface: en0\n"
        )
        assert macos.gateway() == "192.168.1.1"
