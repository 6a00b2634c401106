"""Shared fixtures: throwaway git repositories and an in-memory tmux."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from vibe_orchestrator.config import get_config
from vibe_orchestrator.core import sessions as sessions_mod
from vibe_orchestrator.db.state import get_store
from vibe_orchestrator.integrations import claude, tmux

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def make_repo(path: Path) -> Path:
    """Initialize a repository on ``main`` with one commit."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    subprocess.run(["git", "checkout", "-b", "main"], cwd=path, capture_output=True, check=True)
    (path / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True, check=True)
    subprocess.run(
        ["git", "commit", "-m", "init"],
        cwd=path, capture_output=True, check=True, env=GIT_ENV,
    )
    return path


@pytest.fixture
def git_repo():
    """A temporary git repo with an initial commit, inside its own parent dir."""
    with tempfile.TemporaryDirectory() as tmp:
        yield make_repo(Path(tmp).resolve() / "repo")


@pytest.fixture
def multi_repo_root():
    """A plain directory holding two git repositories and one non-repo dir."""
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp).resolve() / "stack"
        make_repo(root / "api")
        make_repo(root / "web")
        (root / "notes").mkdir()
        yield root


class FakeTmux:
    """Windows and panes of one tmux server, kept in memory."""

    def __init__(self):
        self.sessions: set[str] = set()
        self.windows: dict[str, str] = {}  # "session:name" -> "@N"
        self.panes: dict[str, str] = {}    # "%N" -> "session:name"
        self.sent: list[tuple[str, str]] = []
        self.screens: dict[str, str] = {}
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _resolve(self, target: str) -> str | None:
        """Map a window target, window id or pane id to ``session:name``.

        Like tmux, a bare ``session:name`` target with no exact match falls
        back to the one window whose name starts with it; ``=`` forms do not.
        """
        if target in self.panes:
            return self.panes[target]
        for name, wid in self.windows.items():
            if wid == target:
                return name
        exact = target.replace("=", "")
        if exact in self.windows:
            return exact
        if "=" not in target:
            matches = [w for w in self.windows if w.startswith(target)]
            if len(matches) == 1:
                return matches[0]
        return None

    def _new_pane(self, window: str) -> str:
        pane = f"%{self._next()}"
        self.panes[pane] = window
        return pane

    # ── tmux module surface ──

    def session_exists(self, name):
        return name in self.sessions

    def ensure_session(self, name, working_dir=None):
        if name in self.sessions:
            return False
        self.sessions.add(name)
        return True

    def create_window(self, session, name, working_dir):
        self.sessions.add(session)
        target = f"{session}:{name}"
        self.windows[target] = f"@{self._next()}"
        self._new_pane(target)
        return self.windows[target]

    def split_pane(self, target, working_dir, horizontal=True):
        window = self._resolve(target)
        if window is None:
            raise tmux.TmuxError(f"tmux split-window failed: can't find window: {target}")
        return self._new_pane(window)

    def send_text(self, target, text):
        if self._resolve(target) is None:
            raise tmux.TmuxError(f"tmux send-keys failed: can't find pane: {target}")
        self.sent.append((target, text))

    def window_exists(self, target):
        return self._resolve(target) is not None

    def window_identity(self, target):
        window = self._resolve(target)
        if window is None:
            return None
        session, _, name = window.partition(":")
        return session, name

    def find_window(self, session, name):
        return self.windows.get(f"{session}:{name}")

    def pane_exists(self, pane_id):
        return pane_id in self.panes

    def list_windows(self, session):
        prefix = f"{session}:"
        return [t[len(prefix):] for t in self.windows if t.startswith(prefix)]

    def first_pane_id(self, target):
        window = self._resolve(target)
        for pane, owner in self.panes.items():
            if owner == window:
                return pane
        return ""

    def kill_window(self, target):
        window = self._resolve(target)
        if window is None:
            raise tmux.TmuxError(f"tmux kill-window failed: can't find window: {target}")
        del self.windows[window]
        self.panes = {p: w for p, w in self.panes.items() if w != window}

    def kill_pane(self, pane_id):
        if pane_id not in self.panes:
            raise tmux.TmuxError(f"tmux kill-pane failed: can't find pane: {pane_id}")
        del self.panes[pane_id]

    def capture(self, target, lines=50):
        if self._resolve(target) is None:
            raise tmux.TmuxError(f"tmux capture-pane failed: can't find pane: {target}")
        return self.screens.get(target, "")

    def close_window(self, target):
        """Simulate the user closing a window outside the orchestrator."""
        self.kill_window(target)

    def noop(self, *args, **kwargs):
        return None


_PATCHED = [
    "session_exists", "ensure_session", "create_window", "split_pane", "send_text",
    "window_exists", "pane_exists", "list_windows", "first_pane_id", "kill_window",
    "kill_pane", "capture", "window_identity", "find_window",
]
_NOOPS = [
    "select_window", "disable_auto_rename", "set_escape_time",
    "setup_nav_bindings", "cleanup_nav_bindings", "ensure_nav_bindings",
]


@pytest.fixture
def fake_tmux(monkeypatch):
    fake = FakeTmux()
    for name in _PATCHED:
        monkeypatch.setattr(tmux, name, getattr(fake, name))
    for name in _NOOPS:
        monkeypatch.setattr(tmux, name, fake.noop)
    monkeypatch.setattr(tmux, "attach", lambda session_name: 0)
    monkeypatch.setattr(tmux, "is_available", lambda: True)
    monkeypatch.setattr(claude, "is_available", lambda: True)
    return fake


@pytest.fixture
def workspace(git_repo, fake_tmux, monkeypatch, tmp_path):
    """An initialized single-repo workspace. Yields (store, config)."""
    monkeypatch.setenv("VIBE_WORKSPACE", str(git_repo))
    monkeypatch.setenv("VIBE_CONFIG_DIR", str(tmp_path / "global"))
    monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
    config = get_config()
    sessions_mod.init_workspace(config)
    return get_store(config), config
