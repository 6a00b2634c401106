"""Tests for the session lifecycle."""

import tempfile
from pathlib import Path

import pytest

from vibe_orchestrator.config import Config
from vibe_orchestrator.core import sessions as sessions_mod
from vibe_orchestrator.core.sessions import SessionNotFoundError, UserError
from vibe_orchestrator.db.models import ARCHIVED, PAUSED, SessionState
from vibe_orchestrator.db.state import StateStore
from vibe_orchestrator.integrations import tmux
from vibe_orchestrator.integrations.git import branch_exists, worktree_list

from conftest import make_repo


class TestInit:
    def test_single_repo(self, workspace, git_repo):
        store, _ = workspace
        state = store.load()
        assert state.workspace.kind.value == "SingleRepo"
        assert state.workspace.default_branch == "main"
        assert state.tmux_session_name == "vibe-repo"
        main = state.main_session()
        assert main.is_main and main.worktree_path == git_repo

    def test_already_initialized(self, workspace):
        _, config = workspace
        assert sessions_mod.init_workspace(config)["initialized"] is False

    def test_multi_repo(self, multi_repo_root):
        result = sessions_mod.init_workspace(Config(workspace_root=multi_repo_root))
        assert result["kind"] == "MultiRepo"
        assert result["repos"] == ["api", "web"]
        state = StateStore(multi_repo_root).load()
        assert state.workspace.repo_by_name("api").root == multi_repo_root / "api"

    def test_no_repositories(self):
        with tempfile.TemporaryDirectory() as tmp:
            with pytest.raises(UserError, match="no git repositories"):
                sessions_mod.init_workspace(Config(workspace_root=Path(tmp)))

    def test_refresh_repos(self, multi_repo_root):
        sessions_mod.init_workspace(Config(workspace_root=multi_repo_root))
        make_repo(multi_repo_root / "worker")
        result = sessions_mod.refresh_repos(StateStore(multi_repo_root))
        assert result["added"] == ["worker"]
        assert result["removed"] == []

    def test_refresh_single_repo_is_noop(self, workspace):
        store, _ = workspace
        assert sessions_mod.refresh_repos(store)["refreshed"] is False


class TestValidation:
    @pytest.mark.parametrize("name", ["main", "dashboard", "a:b", "a.b", "a b", ""])
    def test_rejected_names(self, name):
        with pytest.raises(UserError):
            sessions_mod.validate_session_name(name)

    def test_headless_needs_prompt(self, workspace):
        store, config = workspace
        with pytest.raises(UserError, match="--prompt"):
            sessions_mod.create_session(store, config, "auth", headless=True)

    def test_missing_tool(self, workspace, monkeypatch):
        store, config = workspace
        monkeypatch.setattr(tmux, "is_available", lambda: False)
        with pytest.raises(sessions_mod.ToolMissingError, match="tmux"):
            sessions_mod.create_session(store, config, "auth")


class TestCreate:
    def test_create_session(self, workspace, fake_tmux, git_repo):
        store, config = workspace
        result = sessions_mod.create_session(store, config, "auth")

        assert result["branch"] == "feat/auth"
        window_id = fake_tmux.windows["vibe-repo:auth"]
        assert result["window"] == window_id
        path = Path(result["worktree_path"])
        assert path.exists()
        assert path.name.startswith("repo-vibe-")
        assert "vibe-repo:auth" in fake_tmux.windows
        target, command = fake_tmux.sent[-1]
        assert target == window_id
        assert command.startswith("claude")

        session = store.load().find_session_by_name("auth")
        assert session.status.state is SessionState.ACTIVE
        assert session.tmux_window == window_id
        assert branch_exists(git_repo, "feat/auth")

    def test_template_sets_system_prompt(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "plan", template="planner")
        _, command = fake_tmux.sent[-1]
        assert "--system-prompt" in command
        assert "--permission-mode plan" in command
        assert store.load().find_session_by_name("plan").template == "planner"

    def test_headless_session_command(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "batch", headless=True, prompt="fix lint")
        _, command = fake_tmux.sent[-1]
        assert command.startswith("claude -p --output-format json")
        assert command.endswith("'fix lint'")

    def test_duplicate_name(self, workspace):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        with pytest.raises(UserError, match="already exists"):
            sessions_mod.create_session(store, config, "auth")

    def test_unknown_template(self, workspace):
        store, config = workspace
        with pytest.raises(UserError, match="not found"):
            sessions_mod.create_session(store, config, "auth", template="nope")

    def test_failure_rolls_back(self, workspace, fake_tmux, git_repo, monkeypatch):
        store, config = workspace

        def broken_send(target, text):
            raise tmux.TmuxError("tmux send-keys failed: server exited")

        monkeypatch.setattr(tmux, "send_text", broken_send)
        with pytest.raises(tmux.TmuxError):
            sessions_mod.create_session(store, config, "auth")

        assert store.load().find_session_by_name("auth") is None
        assert "vibe-repo:auth" not in fake_tmux.windows
        managed = [w for w in worktree_list(git_repo) if "-vibe-" in w.path]
        assert managed == []

    def test_multi_repo_session(self, multi_repo_root, fake_tmux):
        config = Config(workspace_root=multi_repo_root)
        sessions_mod.init_workspace(config)
        store = StateStore(multi_repo_root)

        result = sessions_mod.create_session(store, config, "cross")

        root = Path(result["worktree_path"])
        assert root.name.startswith("stack-vibe-")
        assert result["repo_worktrees"] == {"api": str(root / "api"), "web": str(root / "web")}
        assert (root / "api" / "README.md").exists()


class TestKill:
    def test_active_needs_force(self, workspace):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        result = sessions_mod.kill_session(store, "auth")
        assert result["killed"] is False
        assert "--force" in result["reason"]
        assert store.load().find_session_by_name("auth") is not None

    def test_force_kill(self, workspace, fake_tmux, git_repo):
        store, config = workspace
        created = sessions_mod.create_session(store, config, "auth")

        result = sessions_mod.kill_session(store, "auth", force=True, delete_branch=True)

        assert result["killed"] is True
        assert result["window_removed"] is True
        assert not Path(created["worktree_path"]).exists()
        assert "vibe-repo:auth" not in fake_tmux.windows
        assert store.load().find_session_by_name("auth") is None
        assert not branch_exists(git_repo, "feat/auth")

    def test_paused_kill_without_force(self, workspace):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        with store.transaction() as state:
            state.find_session_by_name("auth").set_status(PAUSED)
        assert sessions_mod.kill_session(store, "auth")["killed"] is True

    def test_main_cannot_be_killed(self, workspace, git_repo):
        store, _ = workspace
        with pytest.raises(UserError, match="main"):
            sessions_mod.kill_session(store, "main", force=True)
        assert git_repo.exists()

    def test_unknown_session(self, workspace):
        store, _ = workspace
        with pytest.raises(SessionNotFoundError):
            sessions_mod.kill_session(store, "ghost")

    def test_kill_spares_window_with_longer_name(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "demo")
        sessions_mod.create_session(store, config, "demo-2")
        fake_tmux.close_window("vibe-repo:demo")

        result = sessions_mod.kill_session(store, "demo", force=True)

        assert result["window_removed"] is False
        assert "vibe-repo:demo-2" in fake_tmux.windows


class TestCleanup:
    def _archive(self, store, name):
        with store.transaction() as state:
            state.find_session_by_name(name).set_status(ARCHIVED)

    def test_dry_run_changes_nothing(self, workspace):
        store, config = workspace
        created = sessions_mod.create_session(store, config, "old")
        self._archive(store, "old")

        result = sessions_mod.cleanup_sessions(store, dry_run=True)

        assert [s["name"] for s in result["sessions"]] == ["old"]
        assert Path(created["worktree_path"]).exists()
        assert store.load().find_session_by_name("old") is not None

    def test_removes_archived(self, workspace):
        store, config = workspace
        created = sessions_mod.create_session(store, config, "old")
        sessions_mod.create_session(store, config, "live")
        self._archive(store, "old")

        result = sessions_mod.cleanup_sessions(store)

        assert [s["name"] for s in result["sessions"]] == ["old"]
        assert not Path(created["worktree_path"]).exists()
        state = store.load()
        assert state.find_session_by_name("old") is None
        assert state.find_session_by_name("live") is not None

    def test_nothing_to_clean(self, workspace):
        store, _ = workspace
        assert sessions_mod.cleanup_sessions(store)["sessions"] == []


class TestResumeAndStatus:
    def test_resume_reopens_lost_window(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        fake_tmux.close_window("vibe-repo:auth")
        with store.transaction() as state:
            state.find_session_by_name("auth").set_status(PAUSED)

        notices = sessions_mod.resume_sessions(store, config)

        assert "Session 'auth' resumed" in notices
        assert "vibe-repo:auth" in fake_tmux.windows
        assert store.load().find_session_by_name("auth").status.state is SessionState.ACTIVE

    def test_resume_ignores_window_with_longer_name(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "demo")
        sessions_mod.create_session(store, config, "demo-2")
        fake_tmux.close_window("vibe-repo:demo")
        with store.transaction() as state:
            state.find_session_by_name("demo").set_status(PAUSED)

        sessions_mod.resume_sessions(store, config)

        session = store.load().find_session_by_name("demo")
        assert session.tmux_window == fake_tmux.windows["vibe-repo:demo"]
        assert session.tmux_window != fake_tmux.windows["vibe-repo:demo-2"]

    def test_reused_window_id_is_not_trusted(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "demo")
        sessions_mod.create_session(store, config, "demo-2")
        fake_tmux.close_window("vibe-repo:demo")
        state = store.load()
        session = state.find_session_by_name("demo")
        session.tmux_window = fake_tmux.windows["vibe-repo:demo-2"]

        assert sessions_mod.resolve_window(state, session) is None

    def test_legacy_name_handle_resolves_to_id(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        state = store.load()
        session = state.find_session_by_name("auth")
        session.tmux_window = "vibe-repo:auth"

        assert sessions_mod.resolve_window(state, session) == fake_tmux.windows["vibe-repo:auth"]

    def test_attach_without_window(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        fake_tmux.close_window("vibe-repo:auth")
        with pytest.raises(UserError, match="no window"):
            sessions_mod.attach_session(store, "auth")

    def test_attach(self, workspace, fake_tmux):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        assert sessions_mod.attach_session(store, "auth") == 0

    def test_attach_without_tmux_session(self, workspace):
        store, _ = workspace
        with pytest.raises(UserError, match="not running"):
            sessions_mod.attach_session(store, "main")

    def test_workspace_status(self, workspace):
        store, config = workspace
        sessions_mod.create_session(store, config, "auth")
        status = sessions_mod.workspace_status(store.load())
        assert status["workspace"] == "repo"
        assert status["session_counts"] == {"Active": 2}
        assert [s["name"] for s in status["sessions"]] == ["main", "auth"]
