"""Tests for the tmux wrapper: retries, existence checks, batching and nav lock ownership."""

import os
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from vibe_orchestrator.integrations import tmux


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(["tmux"], returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def lock_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "nav_bindings.lock"


class TestRunTmux:
    def test_success_returns_stdout(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(stdout="@3\n")) as run:
            assert tmux.run_tmux(["new-window"]) == "@3"
        assert run.call_args[0][0] == ["tmux", "new-window"]

    def test_transient_failure_retried(self):
        results = [
            _completed(1, stderr="lost server"),
            _completed(1, stderr="connection refused"),
            _completed(stdout="ok"),
        ]
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", side_effect=results) as run, \
                patch("vibe_orchestrator.integrations.tmux.time.sleep") as sleep:
            assert tmux.run_tmux(["list-windows"]) == "ok"
        assert run.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.05, 0.1]

    def test_transient_gives_up_after_three(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(1, stderr="server exited unexpectedly")) as run, \
                patch("vibe_orchestrator.integrations.tmux.time.sleep"):
            with pytest.raises(tmux.TransientTmuxError):
                tmux.run_tmux(["list-windows"])
        assert run.call_count == 3

    def test_permanent_failure_not_retried(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(1, stderr="unknown command: bogus")) as run:
            with pytest.raises(tmux.TmuxError):
                tmux.run_tmux(["bogus"])
        assert run.call_count == 1

    def test_timeout(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   side_effect=subprocess.TimeoutExpired("tmux", 5)):
            with pytest.raises(tmux.TmuxError, match="timed out"):
                tmux.run_tmux(["list-windows"])


class TestExistenceChecks:
    def test_missing_window_is_false(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(1, stderr="can't find window: feat")):
            assert tmux.window_exists("vibe-app:feat") is False

    def test_no_server_is_false(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(1, stderr="no server running on /tmp/tmux-0/default")):
            assert tmux.session_exists("vibe-app") is False

    def test_other_errors_raise(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(1, stderr="permission denied")):
            with pytest.raises(tmux.TmuxError):
                tmux.window_exists("vibe-app:feat")

    def test_pane_exists_compares_id(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(stdout="%7")):
            assert tmux.pane_exists("%7") is True
            assert tmux.pane_exists("%8") is False

    def test_empty_target_short_circuits(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run") as run:
            assert tmux.window_exists("") is False
            assert tmux.pane_exists("") is False
        run.assert_not_called()

    def test_missing_binary_is_not_absence(self):
        missing = FileNotFoundError(2, "No such file or directory", "tmux")
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", side_effect=missing):
            with pytest.raises(tmux.TmuxNotFoundError):
                tmux.window_exists("@3")
            with pytest.raises(tmux.TmuxNotFoundError):
                tmux.pane_exists("%3")
            with pytest.raises(tmux.TmuxNotFoundError):
                tmux.find_window("vibe-app", "feat")
            with pytest.raises(tmux.TmuxNotFoundError):
                tmux.window_identity("@3")

    def test_session_check_is_exact(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed()) as run:
            tmux.session_exists("vibe-app")
        assert run.call_args[0][0] == ["tmux", "has-session", "-t", "=vibe-app"]

    def test_find_window_matches_whole_name(self):
        listing = "@1\tdemo-2\n@4\tdemo\n"
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(stdout=listing)):
            assert tmux.find_window("vibe-ws", "demo") == "@4"
            assert tmux.find_window("vibe-ws", "dem") is None

    def test_window_identity(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(stdout="vibe-ws\tauth\n")):
            assert tmux.window_identity("@2") == ("vibe-ws", "auth")
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run",
                   return_value=_completed(1, stderr="can't find window: @2")):
            assert tmux.window_identity("@2") is None


class TestEnsureSession:
    def test_second_call_creates_nothing(self):
        results = [
            _completed(1, stderr="can't find session: vibe-app"),
            _completed(),
            _completed(),
        ]
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", side_effect=results) as run:
            assert tmux.ensure_session("vibe-app") is True
            assert tmux.ensure_session("vibe-app") is False
        commands = [c.args[0][1] for c in run.call_args_list]
        assert commands == ["has-session", "new-session", "has-session"]

    def test_lost_creation_race_is_not_an_error(self):
        results = [
            _completed(1, stderr="can't find session: vibe-app"),
            _completed(1, stderr="duplicate session: vibe-app"),
        ]
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", side_effect=results):
            assert tmux.ensure_session("vibe-app") is False

    def test_other_creation_failures_raise(self):
        results = [
            _completed(1, stderr="can't find session: vibe-app"),
            _completed(1, stderr="create window failed: fork failed"),
        ]
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", side_effect=results):
            with pytest.raises(tmux.TmuxError):
                tmux.ensure_session("vibe-app")


@pytest.fixture
def tmux_server(monkeypatch):
    """A private tmux server holding session ``vibe-ws``."""
    if not tmux.is_available():
        pytest.skip("tmux is not installed")
    with tempfile.TemporaryDirectory(prefix="vt") as tmp:
        monkeypatch.setenv("TMUX_TMPDIR", tmp)
        monkeypatch.delenv("TMUX", raising=False)
        tmux.ensure_session("vibe-ws", tmp)
        yield Path(tmp)
        subprocess.run(["tmux", "kill-server"], capture_output=True)


class TestRealServer:
    def test_window_name_is_not_matched_by_prefix(self, tmux_server):
        tmux.create_window("vibe-ws", "demo-2", tmux_server)

        assert tmux.find_window("vibe-ws", "demo") is None
        assert tmux.window_exists(tmux.window_target("vibe-ws", "demo")) is False
        with pytest.raises(tmux.TmuxError):
            tmux.kill_window(tmux.window_target("vibe-ws", "demo"))
        assert "demo-2" in tmux.list_windows("vibe-ws")

    def test_window_id_handle(self, tmux_server):
        window_id = tmux.create_window("vibe-ws", "auth", tmux_server)
        assert window_id.startswith("@")
        assert tmux.find_window("vibe-ws", "auth") == window_id
        assert tmux.window_identity(window_id) == ("vibe-ws", "auth")

        tmux.kill_window(window_id)
        assert tmux.window_exists(window_id) is False
        assert tmux.window_identity(window_id) is None

    def test_session_name_is_not_matched_by_prefix(self, tmux_server):
        assert tmux.session_exists("vibe-ws") is True
        assert tmux.session_exists("vibe") is False
        assert tmux.list_windows("vibe") == []

    def test_ensure_session_twice_keeps_one(self, tmux_server):
        assert tmux.ensure_session("vibe-ws", tmux_server) is False
        out = subprocess.run(
            ["tmux", "list-sessions", "-F", "#{session_name}"],
            capture_output=True, text=True,
        ).stdout.split()
        assert out == ["vibe-ws"]


class TestBatch:
    def test_commands_joined_with_separator(self):
        batch = tmux.TmuxBatch().add("set-option", "-s", "a", "1").add("bind-key", "d", "x")
        assert batch.args == ["set-option", "-s", "a", "1", ";", "bind-key", "d", "x"]
        assert len(batch) == 2

    def test_empty_batch_skips_tmux(self):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run") as run:
            assert tmux.TmuxBatch().run() == ""
        run.assert_not_called()

    def test_nav_setup_is_one_round_trip(self):
        batch = tmux.build_nav_setup_batch("vibe-app", "[29~", "[33~")
        assert batch.args.count(";") == len(batch) - 1
        assert "\x1b[29~" in batch.args
        assert "User0" in batch.args and "User1" in batch.args
        assert "#{==:#{session_name},vibe-app}" in tmux.nav_condition("vibe-app")

    def test_cleanup_unbinds_quietly(self):
        args = tmux.build_nav_cleanup_batch().args
        assert args.count("-q") == 4


class TestNavLock:
    def test_setup_writes_own_pid(self, lock_path):
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", return_value=_completed()):
            tmux.setup_nav_bindings("vibe-app", "[29~", "[33~", lock_path)
        assert tmux.read_nav_lock(lock_path) == os.getpid()

    def test_cleanup_skipped_when_owned_by_other_live_pid(self, lock_path):
        lock_path.write_text("1")  # init is always alive
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run") as run:
            assert tmux.cleanup_nav_bindings(lock_path) is False
        run.assert_not_called()
        assert lock_path.exists()

    def test_cleanup_by_owner_removes_lock(self, lock_path):
        lock_path.write_text(str(os.getpid()))
        with patch("vibe_orchestrator.integrations.tmux.subprocess.run", return_value=_completed()) as run:
            assert tmux.cleanup_nav_bindings(lock_path) is True
        assert run.called
        assert not lock_path.exists()

    def test_corrupt_lock_is_stale(self, lock_path):
        lock_path.write_text("not-a-pid")
        assert tmux.is_nav_lock_stale(lock_path) is True

    def test_dead_pid_is_stale(self, lock_path):
        lock_path.write_text("99999999")
        with patch("vibe_orchestrator.integrations.tmux.pid_alive", return_value=False):
            assert tmux.is_nav_lock_stale(lock_path) is True

    def test_missing_lock_is_not_stale(self, lock_path):
        assert tmux.is_nav_lock_stale(lock_path) is False

    def test_ensure_noop_when_bindings_intact(self, lock_path):
        with patch("vibe_orchestrator.integrations.tmux.verify_nav_bindings", return_value=True), \
                patch("vibe_orchestrator.integrations.tmux.setup_nav_bindings") as setup:
            assert tmux.ensure_nav_bindings("vibe-app", "[29~", "[33~", lock_path) is False
        setup.assert_not_called()

    def test_ensure_reclaims_stale_lock(self, lock_path):
        lock_path.write_text("99999999")
        with patch("vibe_orchestrator.integrations.tmux.verify_nav_bindings", return_value=False), \
                patch("vibe_orchestrator.integrations.tmux.pid_alive", return_value=False), \
                patch("vibe_orchestrator.integrations.tmux.setup_nav_bindings") as setup:
            assert tmux.ensure_nav_bindings("vibe-app", "[29~", "[33~", lock_path) is True
        assert setup.call_args.args[3] == lock_path

    def test_ensure_reapplies_without_claiming_live_owner(self, lock_path):
        lock_path.write_text("1")
        with patch("vibe_orchestrator.integrations.tmux.verify_nav_bindings", return_value=False), \
                patch("vibe_orchestrator.integrations.tmux.setup_nav_bindings") as setup:
            assert tmux.ensure_nav_bindings("vibe-app", "[29~", "[33~", lock_path) is True
        assert setup.call_args.args[3] is None
