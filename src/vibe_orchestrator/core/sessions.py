"""Session lifecycle: workspace init, create, kill, cleanup, resume and attach."""

import logging
import shlex
import shutil
from pathlib import Path

from vibe_orchestrator.config import Config
from vibe_orchestrator.core.templates import TemplateError, load_template
from vibe_orchestrator.core.worktrees import provision_session, remove_session_worktrees, prune_all
from vibe_orchestrator.db.models import (
    ACTIVE,
    RepoInfo,
    Session,
    SessionState,
    Workspace,
    WorkspaceKind,
    WorkspaceState,
)
from vibe_orchestrator.db.state import StateStore
from vibe_orchestrator.integrations import claude, tmux
from vibe_orchestrator.integrations.git import (
    GitError,
    default_branch,
    find_repo_root,
    is_git_repo,
    remote_url,
)

logger = logging.getLogger(__name__)

MAIN_SESSION_NAME = "main"
RESERVED_NAMES = {MAIN_SESSION_NAME, tmux.DASHBOARD_WINDOW}


class UserError(ValueError):
    """A problem with the request itself, reported verbatim and never retried."""


class SessionNotFoundError(UserError):
    pass


class ToolMissingError(UserError):
    pass


_TOOL_CHECKS = {
    "git": lambda: shutil.which("git") is not None,
    "tmux": lambda: tmux.is_available(),
    "claude": lambda: claude.is_available(),
}


def require_tools(*names: str) -> None:
    """Fail fast when an external CLI the operation drives is not on PATH."""
    missing = [n for n in names if not _TOOL_CHECKS[n]()]
    if missing:
        raise ToolMissingError(f"Required tool(s) not found on PATH: {', '.join(missing)}")


def validate_session_name(name: str) -> None:
    if not name or not name.strip():
        raise UserError("Session name must not be empty")
    if any(c in name for c in ":. \t"):
        raise UserError(f"Invalid session name '{name}': must not contain ':', '.' or whitespace")
    if name in RESERVED_NAMES:
        raise UserError(f"Session name '{name}' is reserved")


def get_session(state: WorkspaceState, name: str) -> Session:
    session = state.find_session_by_name(name)
    if session is None:
        raise SessionNotFoundError(f"Session not found: {name}")
    return session


def resolve_window(state: WorkspaceState, session: Session) -> str | None:
    """Live window id of a session, or None when its window is gone.

    The stored ``@N`` id is trusted only while it still names this session's
    window, since tmux reuses ids after a server restart. Otherwise the window
    is looked up by exact name.
    """
    handle = session.tmux_window
    if handle.startswith("@"):
        if tmux.window_identity(handle) == (state.tmux_session_name, session.name):
            return handle
    return tmux.find_window(state.tmux_session_name, session.name)


# ── Workspace init ───────────────────────────────────────────────────────────


def discover_repos(parent_dir: Path) -> list[RepoInfo]:
    """Immediate, non-hidden subdirectories that are git repositories, sorted by name."""
    repos = []
    for path in Path(parent_dir).iterdir():
        if not path.is_dir() or path.name.startswith("."):
            continue
        if not is_git_repo(path):
            continue
        repos.append(
            RepoInfo(
                root=path,
                name=path.name,
                default_branch=default_branch(path),
                remote_url=remote_url(path),
            )
        )
    return sorted(repos, key=lambda r: r.name)


def init_workspace(config: Config) -> dict:
    """Create ``.vibe/`` and the initial state document. Leaves an existing one alone."""
    root = Path(config.workspace_root).resolve()
    repo_root = find_repo_root(root)
    if repo_root is not None:
        root = repo_root.resolve()
    store = StateStore(root, config.state_dir_name)
    if store.is_initialized():
        return {"initialized": False, "root": str(root), "reason": "already initialized"}

    base_dir = config.resolved_worktree_base_dir(root)
    if repo_root is not None:
        workspace = Workspace(
            root=root,
            name=root.name,
            default_branch=default_branch(root),
            remote_url=remote_url(root),
            worktree_prefix=f"-{config.worktree_suffix}-",
            worktree_base_dir=base_dir,
        )
    else:
        repos = discover_repos(root)
        if not repos:
            raise UserError(
                f"{root} is not a git repository and contains no git repositories"
            )
        workspace = Workspace(
            root=root,
            name=root.name,
            worktree_prefix=f"-{config.worktree_suffix}-",
            worktree_base_dir=base_dir,
            kind=WorkspaceKind.MULTI_REPO,
            repos=repos,
        )

    state = WorkspaceState(
        workspace=workspace,
        tmux_session_name=f"{config.tmux_session_prefix}{workspace.name}",
    )
    ensure_main_session(state)
    store.init()
    store.save(state)
    logger.info("Initialized %s workspace at %s", workspace.kind.value, root)

    return {
        "initialized": True,
        "root": str(root),
        "kind": workspace.kind.value,
        "repos": [r.name for r in workspace.repos],
        "tmux_session": state.tmux_session_name,
    }


def refresh_repos(store: StateStore) -> dict:
    """Re-discover the repositories of a multi-repo workspace."""
    with store.transaction() as state:
        if not state.workspace.is_multi_repo:
            return {"refreshed": False, "reason": "Not a multi-repo workspace"}

        current = discover_repos(state.workspace.root)
        if not current:
            raise UserError("No git repositories found; keeping the existing list")
        old_names = [r.name for r in state.workspace.repos]
        new_names = [r.name for r in current]
        state.workspace.repos = current

    return {
        "refreshed": True,
        "added": [n for n in new_names if n not in old_names],
        "removed": [n for n in old_names if n not in new_names],
        "repos": new_names,
    }


# ── Main session ─────────────────────────────────────────────────────────────


def ensure_main_session(state: WorkspaceState) -> Session | None:
    """Insert the permanent main session at the front if there is none. Returns it when created."""
    if state.main_session() is not None:
        return None
    session = Session(
        name=MAIN_SESSION_NAME,
        branch=state.workspace.default_branch,
        worktree_path=state.workspace.root,
        status=ACTIVE,
        is_main=True,
    )
    state.sessions.insert(0, session)
    return session


# ── Create ───────────────────────────────────────────────────────────────────


def resolve_system_prompt(
    config: Config,
    workspace_root: Path,
    template: str | None,
    override: str | None,
):
    """The override wins; otherwise the template's prompt. Returns (prompt, template)."""
    tmpl = None
    if template:
        try:
            tmpl = load_template(template, config.template_search_dirs(workspace_root))
        except TemplateError as e:
            raise UserError(str(e)) from e
    if override:
        return override, tmpl
    return (tmpl.system_prompt if tmpl else None), tmpl


def _rollback_session(state: WorkspaceState, session: Session, window_created: bool) -> None:
    if window_created:
        try:
            tmux.kill_window(session.tmux_window)
        except tmux.TmuxError as e:
            logger.warning("Rollback: failed to kill window %s: %s", session.tmux_window, e)
    try:
        for warning in remove_session_worktrees(state.workspace, session):
            logger.warning("Rollback: %s", warning)
    except GitError as e:
        logger.warning("Rollback: failed to remove worktrees: %s", e)


def create_session(
    store: StateStore,
    config: Config,
    name: str,
    branch: str | None = None,
    base: str | None = None,
    template: str | None = None,
    system_prompt: str | None = None,
    headless: bool = False,
    prompt: str | None = None,
) -> dict:
    """Provision worktree(s), open a window and start the session's agent."""
    require_tools("git", "tmux", "claude")
    validate_session_name(name)
    if headless and not prompt:
        raise UserError("--prompt is required in headless mode")

    state = store.load()
    existing = state.find_session_by_name(name)
    if existing is not None and not existing.is_archived:
        raise UserError(f"Session '{name}' already exists. Use a different name.")

    resolved_prompt, tmpl = resolve_system_prompt(
        config, state.workspace.root, template, system_prompt
    )
    branch = branch or f"feat/{name}"

    logger.info("Creating session %s on %s", name, branch)
    provisioned = provision_session(
        state.workspace,
        branch,
        state.workspace.worktree_base_dir,
        config.worktree_suffix,
        base,
    )

    session = Session(
        name=name,
        branch=branch,
        worktree_path=provisioned.path,
        template=template,
        system_prompt_override=system_prompt,
        repo_worktrees=provisioned.repo_worktrees,
    )

    window_created = False
    try:
        tmux.ensure_session(state.tmux_session_name, state.workspace.root)
        session.tmux_window = tmux.create_window(state.tmux_session_name, name, provisioned.path)
        window_created = True
        try:
            tmux.disable_auto_rename(session.tmux_window)
        except tmux.TmuxError as e:
            logger.warning("Could not pin window name %s: %s", session.tmux_window, e)

        tool_opts = dict(
            system_prompt=resolved_prompt,
            allowed_tools=tmpl.allowed_tools if tmpl else None,
            disallowed_tools=tmpl.disallowed_tools if tmpl else None,
            permission_mode=tmpl.permission_mode if tmpl else None,
            extra_args=config.claude_extra_args,
        )
        if headless:
            command = shlex.join(claude.headless_command(prompt, **tool_opts))
        else:
            command = claude.interactive_command(prompt=prompt, **tool_opts)
        tmux.send_text(session.tmux_window, command)
        session.set_status(ACTIVE)

        with store.transaction() as current:
            clash = current.find_session_by_name(name)
            if clash is not None and not clash.is_archived:
                raise UserError(f"Session '{name}' already exists. Use a different name.")
            current.sessions.append(session)
    except Exception:
        _rollback_session(state, session, window_created)
        raise

    logger.info("Session %s is ready", name)
    return {
        "session": name,
        "id": session.id,
        "branch": branch,
        "worktree_path": str(session.worktree_path),
        "repo_worktrees": {k: str(v) for k, v in session.repo_worktrees.items()},
        "window": session.tmux_window,
        "status": str(session.status),
        "warnings": provisioned.warnings,
    }


# ── Kill / cleanup ───────────────────────────────────────────────────────────


def _teardown(state: WorkspaceState, session: Session, delete_branch: bool) -> dict:
    """Best-effort removal of a session's window, processes and worktrees."""
    window_removed = False
    try:
        window = resolve_window(state, session)
        if window:
            tmux.kill_window(window)
            window_removed = True
    except tmux.TmuxError as e:
        logger.warning("Failed to kill window %s: %s", session.tmux_window, e)

    for agent in state.agents_for_session(session.id):
        if agent.pid and agent.is_running:
            claude.terminate(agent.pid)

    try:
        warnings = remove_session_worktrees(state.workspace, session, delete_branch)
    except GitError as e:
        warnings = [str(e)]
    for w in warnings:
        logger.warning(w)
    return {"window_removed": window_removed, "warnings": warnings}


def kill_session(
    store: StateStore,
    name: str,
    force: bool = False,
    delete_branch: bool = False,
) -> dict:
    """Tear a session down and delete it, with its agents, from state.

    The main session can never be killed; an active session needs ``force``.
    """
    state = store.load()
    session = get_session(state, name)

    if session.is_main:
        raise UserError("Cannot kill the main session")
    if not force and session.is_active:
        return {
            "killed": False,
            "session": name,
            "reason": f"Session '{name}' is active. Use --force to kill it anyway.",
        }

    logger.info("Killing session %s", name)
    outcome = _teardown(state, session, delete_branch)

    with store.transaction() as current:
        current.remove_session(session.id)

    return {
        "killed": True,
        "session": name,
        "worktree_path": str(session.worktree_path),
        **outcome,
    }


def cleanup_sessions(
    store: StateStore,
    include_completed: bool = False,
    dry_run: bool = False,
) -> dict:
    """Remove archived (and optionally completed) sessions and their worktrees."""
    states = {SessionState.ARCHIVED}
    if include_completed:
        states.add(SessionState.COMPLETED)

    state = store.load()
    targets = [s for s in state.sessions if s.status.state in states and not s.is_main]
    plan = [
        {"name": s.name, "status": str(s.status), "worktree_path": str(s.worktree_path)}
        for s in targets
    ]
    if dry_run or not targets:
        return {"dry_run": dry_run, "sessions": plan, "warnings": []}

    warnings: list[str] = []
    for session in targets:
        warnings += _teardown(state, session, delete_branch=False)["warnings"]

    ids = {s.id for s in targets}
    with store.transaction() as current:
        for session_id in ids:
            current.remove_session(session_id)

    prune_all(state.workspace)
    return {"dry_run": False, "sessions": plan, "warnings": warnings}


# ── Resume / attach ──────────────────────────────────────────────────────────


def resume_sessions(store: StateStore, config: Config) -> list[str]:
    """Reopen windows for live sessions that lost theirs but still have a worktree."""
    notices = []
    with store.transaction() as state:
        for session in state.sessions:
            if session.status.state not in (SessionState.ACTIVE, SessionState.PAUSED):
                continue
            if not session.worktree_path.exists():
                continue
            try:
                window = resolve_window(state, session)
                if window:
                    session.tmux_window = window
                    continue
                tmux.ensure_session(state.tmux_session_name, state.workspace.root)
                session.tmux_window = tmux.create_window(
                    state.tmux_session_name, session.name, session.worktree_path
                )
                try:
                    tmux.disable_auto_rename(session.tmux_window)
                except tmux.TmuxError as e:
                    logger.warning("Could not pin window name %s: %s", session.name, e)
                command = claude.interactive_command(
                    system_prompt=session.system_prompt_override,
                    resume_session=session.claude_session_id,
                    extra_args=config.claude_extra_args,
                )
                tmux.send_text(session.tmux_window, command)
            except tmux.TmuxError as e:
                logger.warning("Could not resume session %s: %s", session.name, e)
                continue
            session.set_status(ACTIVE)
            notices.append(f"Session '{session.name}' resumed")
            logger.info("Resumed session %s", session.name)
    return notices


def attach_session(store: StateStore, name: str | None = None) -> int:
    """Focus a session's window and attach the terminal to the tmux session."""
    state = store.load()
    if name:
        session = get_session(state, name)
    else:
        active = state.active_sessions()
        if not active:
            raise UserError("No active sessions")
        session = max(active, key=lambda s: s.created_at)

    if not tmux.session_exists(state.tmux_session_name):
        raise UserError(f"tmux session '{state.tmux_session_name}' is not running")
    window = resolve_window(state, session)
    if window is None:
        raise UserError(f"Session '{session.name}' has no window; run 'vibe watch' to resume it")
    tmux.select_window(window)
    return tmux.attach(state.tmux_session_name)


# ── Status ───────────────────────────────────────────────────────────────────


def session_summary(state: WorkspaceState, session: Session) -> dict:
    agents = state.agents_for_session(session.id)
    return {
        "id": session.id,
        "name": session.name,
        "branch": session.branch,
        "status": str(session.status),
        "is_main": session.is_main,
        "worktree_path": str(session.worktree_path),
        "repo_worktrees": {k: str(v) for k, v in session.repo_worktrees.items()},
        "window": session.tmux_window,
        "template": session.template,
        "agents": len(agents),
        "created_at": session.created_at.isoformat(),
    }


def workspace_status(state: WorkspaceState) -> dict:
    counts: dict[str, int] = {}
    for s in state.sessions:
        counts[s.status.state.value] = counts.get(s.status.state.value, 0) + 1
    return {
        "workspace": state.workspace.name,
        "root": str(state.workspace.root),
        "kind": state.workspace.kind.value,
        "repos": [r.name for r in state.workspace.repos],
        "tmux_session": state.tmux_session_name,
        "session_counts": counts,
        "sessions": [session_summary(state, s) for s in state.sessions],
        "running_agents": len(state.running_agents()),
    }
