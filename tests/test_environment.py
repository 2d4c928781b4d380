"""Tests for environment capture, clearing and restoration."""

import os

import pytest

from repro_harness.environment import EnvironmentManager, EnvironmentSnapshot
from repro_harness.errors import RestoreFailed


class StickyEnv(dict):
    """An environment that silently refuses to drop one variable."""

    def __delitem__(self, key):
        if key == "STICKY":
            return
        super().__delitem__(key)


class RefusingEnv(dict):
    """An environment that rejects one variable, like a platform limit would."""

    def __setitem__(self, key, value):
        if key == "BAD":
            raise OSError("value rejected")
        super().__setitem__(key, value)


class TestSnapshot:
    """Test environment snapshots."""

    def test_preserves_order(self):
        snap = EnvironmentSnapshot.of({"B": "2", "A": "1"})
        assert snap.items == (("B", "2"), ("A", "1"))
        assert list(snap.as_dict()) == ["B", "A"]

    def test_diff(self):
        before = EnvironmentSnapshot.of({"A": "1", "B": "2", "C": "3"})
        after = EnvironmentSnapshot.of({"A": "1", "B": "changed", "D": "4"})
        assert before.diff(after) == {"added": ["D"], "removed": ["C"], "changed": ["B"]}


class TestEnvironmentManager:
    """Test capture, clear and restore of the environment."""

    def test_clear_keeps_named_variables(self):
        env = {"PATH": "/bin", "SECRET": "x", "HOME": "/root"}
        manager = EnvironmentManager(env)
        snapshot = manager.clear(keep={"PATH"})
        assert env == {"PATH": "/bin"}
        assert snapshot.as_dict() == {"PATH": "/bin", "SECRET": "x", "HOME": "/root"}

    def test_round_trip_law(self):
        env = {"A": "1", "B": "2", "C": "3"}
        manager = EnvironmentManager(env)
        snapshot = manager.clear()
        # Whatever the guarded code does in between...
        env["NEW"] = "added"
        env["A"] = "overwritten"
        manager.restore(snapshot)
        assert manager.capture() == snapshot

    def test_restore_removes_overwrites_and_readds(self):
        env = {"KEEP": "1", "CHANGE": "old", "GONE": "x"}
        manager = EnvironmentManager(env)
        snapshot = manager.capture()
        del env["GONE"]
        env["CHANGE"] = "new"
        env["EXTRA"] = "y"
        manager.restore(snapshot)
        assert env == {"KEEP": "1", "CHANGE": "old", "GONE": "x"}

    def test_clear_is_verified(self):
        env = StickyEnv({"STICKY": "1", "OTHER": "2"})
        manager = EnvironmentManager(env)
        with pytest.raises(RestoreFailed) as excinfo:
            manager.clear()
        assert excinfo.value.names == ["STICKY"]
        # Rolled back rather than half cleared.
        assert dict(env) == {"STICKY": "1", "OTHER": "2"}

    def test_restore_failure_names_variables(self):
        env = RefusingEnv({"A": "1"})
        manager = EnvironmentManager(env)
        snapshot = EnvironmentSnapshot.of({"A": "1", "BAD": "x"})
        with pytest.raises(RestoreFailed) as excinfo:
            manager.restore(snapshot)
        assert excinfo.value.names == ["BAD"]
        assert excinfo.value.reason.value == "restore_failed"

    def test_isolated_restores_on_exception(self):
        env = {"A": "1"}
        manager = EnvironmentManager(env)
        with pytest.raises(RuntimeError):
            with manager.isolated():
                env["B"] = "2"
                raise RuntimeError("test blew up")
        assert env == {"A": "1"}

    def test_isolated_yields_prior_snapshot(self):
        env = {"A": "1"}
        manager = EnvironmentManager(env)
        with manager.isolated() as snapshot:
            assert env == {}
            assert snapshot.as_dict() == {"A": "1"}

    def test_real_process_environment(self, monkeypatch):
        monkeypatch.setenv("REPRO_TEST_SECRET", "hunter2")
        manager = EnvironmentManager()
        with manager.isolated(keep={"PATH"}):
            assert "REPRO_TEST_SECRET" not in os.environ
            assert "PATH" in os.environ
            os.environ["REPRO_TEST_LEAK"] = "1"
        assert os.environ["REPRO_TEST_SECRET"] == "hunter2"
        assert "REPRO_TEST_LEAK" not in os.environ
