"""Tests for collect(), collect_and_save() and strategy selection."""

import logging

import pytest

from host_triage.collectors import KIND_METHODS, CollectionContext, collect, collect_and_save, parse_kind
from host_triage.exceptions import CommandError
from host_triage.models import ArtifactKind, CronEntry, UserAccount
from host_triage.platforms import (
    LinuxStrategy,
    MacOSStrategy,
    PlatformStrategy,
    UnsupportedStrategy,
    WindowsStrategy,
    strategy_for,
)


class StubStrategy(PlatformStrategy):
    name = "stub"

    def __init__(self, users=None, error=None, **kwargs):
        super().__init__(**kwargs)
        self._users = users or []
        self._error = error

    def users(self):
        if self._error:
            raise self._error
        return self._users


class TestParseKind:
    def test_values(self):
        assert parse_kind("login_failed") is ArtifactKind.LOGIN_FAILED
        assert parse_kind(ArtifactKind.RDP) is ArtifactKind.RDP

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown artifact kind: 'bogus'"):
            parse_kind("bogus")

    def test_every_kind_has_a_method(self):
        assert set(KIND_METHODS) == set(ArtifactKind)
        for method in KIND_METHODS.values():
            assert callable(getattr(PlatformStrategy, method))


class TestCollect:
    def test_returns_records(self):
        users = [UserAccount(username="alice")]
        ctx = CollectionContext(strategy=StubStrategy(users=users))
        assert collect("users", ctx) == users

    def test_unsupported_kind_is_empty(self):
        ctx = CollectionContext(strategy=StubStrategy())
        assert collect(ArtifactKind.PROCESS, ctx) == []

    def test_unsupported_platform_is_empty(self):
        ctx = CollectionContext(strategy=UnsupportedStrategy())
        for kind in ArtifactKind:
            assert collect(kind, ctx) == []

    def test_failure_is_absorbed(self):
        ctx = CollectionContext(strategy=StubStrategy(error=CommandError("dscl failed")))
        assert collect("users", ctx) == []

    def test_os_error_is_absorbed(self):
        ctx = CollectionContext(strategy=StubStrategy(error=PermissionError("denied")))
        assert collect("users", ctx) == []

    def test_unexpected_error_is_absorbed(self, caplog):
        ctx = CollectionContext(strategy=StubStrategy(error=KeyError("bug")))
        with caplog.at_level(logging.WARNING, logger="host_triage.collectors"):
            assert collect("users", ctx) == []
        assert any(r.exc_info for r in caplog.records)

    def test_cancelled(self):
        ctx = CollectionContext(strategy=StubStrategy(users=[UserAccount(username="alice")]))
        ctx.cancel.set()
        assert collect("users", ctx) == []

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            collect("bogus", CollectionContext(strategy=StubStrategy()))


class TestCollectAndSave:
    def test_saves_batch(self, store):
        users = [UserAccount(username="alice", uid="1000"), UserAccount(username="bob", uid="1001")]
        ctx = CollectionContext(strategy=StubStrategy(users=users), store=store)
        assert collect_and_save("users", ctx) == users
        assert [r["username"] for r in store.fetch_rows("user_info")] == ["alice", "bob"]

    def test_empty_collection_writes_nothing(self, store):
        ctx = CollectionContext(strategy=StubStrategy(), store=store)
        assert collect_and_save("users", ctx) == []
        assert store.count_rows("user_info") == 0

    def test_requires_store(self):
        with pytest.raises(ValueError, match="no store"):
            collect_and_save("users", CollectionContext(strategy=StubStrategy()))

    def test_real_strategy_against_fake_root(self, store, fake_root, fake_home, fake_runner):
        fake_runner.outputs["crontab -l"] = "0 3 * * * /usr/local/bin/rotate\n"
        strategy = LinuxStrategy(root=fake_root.path, home=fake_home.path, runner=fake_runner)
        records = collect_and_save("cron", CollectionContext(strategy=strategy, store=store))
        assert records == [CronEntry(line="0 3 * * * /usr/local/bin/rotate", source="crontab")]
        assert store.fetch_rows("cron_task")[0]["line"] == "0 3 * * * /usr/local/bin/rotate"


class TestStrategySelection:
    @pytest.mark.parametrize("system,cls", [
        ("Linux", LinuxStrategy),
        ("linux", LinuxStrategy),
        ("Darwin", MacOSStrategy),
        ("Windows", WindowsStrategy),
    ])
    def test_known(self, system, cls):
        assert type(strategy_for(system)) is cls

    def test_unknown(self):
        strategy = strategy_for("Plan9")
        assert isinstance(strategy, UnsupportedStrategy)
        assert strategy.name == "unsupported"

    def test_kwargs_forwarded(self, tmp_path):
        strategy = strategy_for("Linux", root=tmp_path)
        assert strategy.host_path("/etc/passwd") == tmp_path / "etc" / "passwd"
