"""Agent orchestration: spawning headless and pane agents, shells, results and teardown."""

import logging
import re

from vibe_orchestrator.config import Config
from vibe_orchestrator.core.sessions import (
    SessionNotFoundError,
    UserError,
    get_session,
    require_tools,
    resolve_system_prompt,
    resolve_window,
)
from vibe_orchestrator.db.models import (
    Agent,
    AgentMode,
    AgentResult,
    AgentState,
    AgentStatus,
    InvalidTransitionError,
    Session,
    WorkspaceState,
)
from vibe_orchestrator.db.state import StateStore
from vibe_orchestrator.integrations import claude, tmux
from vibe_orchestrator.integrations.claude import ClaudeError

logger = logging.getLogger(__name__)

RUNNING = AgentStatus(AgentState.RUNNING)
COMPLETED = AgentStatus(AgentState.COMPLETED)
INGESTED = AgentStatus(AgentState.INGESTED)
KILLED = "killed"

SHELL_WINDOW_RE = re.compile(r"~shell-(\d+)$")


class AgentNotFoundError(UserError):
    pass


def get_agent(state: WorkspaceState, ref: str) -> Agent:
    agent = state.find_agent(ref)
    if agent is None:
        raise AgentNotFoundError(f"Agent not found: {ref}")
    return agent


def resolve_parent(state: WorkspaceState, session_name: str | None = None) -> Session:
    """The named session, else the most recently created active one."""
    if session_name:
        session = get_session(state, session_name)
        if session.is_archived:
            raise UserError(f"Session '{session_name}' is archived")
        return session
    active = state.active_sessions()
    if not active:
        raise UserError("No active sessions. Create one with 'vibe new' or pass --session.")
    return max(active, key=lambda s: s.created_at)


def _default_name(parent: Session, base: str) -> str:
    return f"{base}-{len(parent.agents) + 1}"


def _register(store: StateStore, agent: Agent) -> None:
    """Persist a new agent and append it to its parent's agent list."""
    with store.transaction() as state:
        parent = state.find_session_by_id(agent.parent_session)
        if parent is None:
            raise SessionNotFoundError(f"Session {agent.parent_session} disappeared")
        state.agents.append(agent)
        parent.agents.append(agent.id)


# ── Spawning ─────────────────────────────────────────────────────────────────


def spawn_agent(
    store: StateStore,
    config: Config,
    prompt: str,
    session_name: str | None = None,
    template: str | None = None,
    interactive: bool | None = None,
    name: str | None = None,
) -> Agent:
    """Start a sub-agent in a session's worktree.

    Headless agents run as detached processes writing their JSON record to
    ``.vibe/agents/<id>/output.json``; interactive ones get a new pane split
    from the session window.
    """
    if not prompt:
        raise UserError("A prompt is required to spawn an agent")

    state = store.load()
    parent = resolve_parent(state, session_name)
    system_prompt, tmpl = resolve_system_prompt(config, state.workspace.root, template, None)

    if interactive is None:
        interactive = tmpl is not None and tmpl.mode is AgentMode.INTERACTIVE
    mode = AgentMode.INTERACTIVE if interactive else AgentMode.HEADLESS
    if interactive:
        require_tools("claude", "tmux")
    else:
        require_tools("claude")

    agent = Agent.new(
        parent_session=parent.id,
        name=name or _default_name(parent, template or "agent"),
        mode=mode,
        prompt=prompt,
        worktree_path=parent.worktree_path,
        output_dir=store.agents_dir,
    )
    agent.template = template
    agent.system_prompt = system_prompt

    tool_opts = dict(
        system_prompt=system_prompt,
        allowed_tools=tmpl.allowed_tools if tmpl else None,
        disallowed_tools=tmpl.disallowed_tools if tmpl else None,
        permission_mode=tmpl.permission_mode if tmpl else None,
        extra_args=config.claude_extra_args,
    )

    if mode is AgentMode.HEADLESS:
        cmd = claude.headless_command(prompt, **tool_opts)
        proc = claude.launch_headless(cmd, agent.worktree_path, agent.output_file)
        agent.pid = proc.pid
    else:
        window = resolve_window(state, parent)
        if window is None:
            raise UserError(
                f"Session '{parent.name}' has no window; run 'vibe watch' to resume it"
            )
        pane = tmux.split_pane(window, agent.worktree_path, horizontal=True)
        agent.tmux_pane = pane
        try:
            tmux.send_text(pane, claude.interactive_command(prompt=prompt, **tool_opts))
        except tmux.TmuxError:
            _kill_pane_quietly(pane)
            raise
    agent.set_status(RUNNING)

    try:
        _register(store, agent)
    except Exception:
        _teardown_agent(agent)
        raise

    logger.info("Spawned %s agent %s (%s) in session %s", mode, agent.name, agent.id, parent.name)
    return agent


def open_shell(store: StateStore, session_name: str | None = None) -> Agent:
    """Open a plain shell window ``{session}~shell-N`` in a session's worktree."""
    require_tools("tmux")
    state = store.load()
    parent = resolve_parent(state, session_name)

    numbers = []
    prefix = f"{parent.name}~shell-"
    for window in tmux.list_windows(state.tmux_session_name):
        if window.startswith(prefix) and (m := SHELL_WINDOW_RE.search(window)):
            numbers.append(int(m.group(1)))
    window_name = f"{prefix}{max(numbers, default=0) + 1}"

    tmux.ensure_session(state.tmux_session_name, state.workspace.root)
    window_id = tmux.create_window(state.tmux_session_name, window_name, parent.worktree_path)
    pane = tmux.first_pane_id(window_id)

    agent = Agent.new(
        parent_session=parent.id,
        name=window_name,
        mode=AgentMode.SHELL,
        prompt="",
        worktree_path=parent.worktree_path,
        output_dir=store.agents_dir,
    )
    agent.tmux_pane = pane
    agent.set_status(RUNNING)

    try:
        _register(store, agent)
    except Exception:
        _teardown_agent(agent)
        raise
    logger.info("Opened shell %s for session %s", window_name, parent.name)
    return agent


# ── Results ──────────────────────────────────────────────────────────────────


def apply_agent_result(agent: Agent, result: AgentResult) -> bool:
    """Fold a parsed result into an agent. Returns False for a duplicate or late result."""
    if agent.is_done:
        return False
    if result.success:
        agent.set_status(COMPLETED)
    else:
        agent.set_status(AgentStatus.failed(result.summary or "agent reported an error"))
    agent.result = result
    if result.session_id:
        agent.claude_session_id = result.session_id
    return True


def fold_completion(store: StateStore, agent_id: str, result: AgentResult) -> Agent | None:
    """Apply a completion event under the state lock. Returns the agent if it changed."""
    with store.transaction() as state:
        agent = state.find_agent(agent_id)
        if agent is None:
            logger.debug("Completion for unknown agent %s ignored", agent_id)
            return None
        try:
            changed = apply_agent_result(agent, result)
        except InvalidTransitionError as e:
            logger.warning("Ignoring result for agent %s: %s", agent.name, e)
            return None
        return agent if changed else None


def mark_ingested(store: StateStore, agent_ref: str) -> Agent:
    """Record that a completed agent's result was consumed (idempotent)."""
    with store.transaction() as state:
        agent = get_agent(state, agent_ref)
        if agent.status.state not in (AgentState.COMPLETED, AgentState.INGESTED):
            raise UserError(
                f"Agent '{agent.name}' has no result to ingest (status: {agent.status})"
            )
        agent.set_status(INGESTED)
        return agent


def get_agent_output(store: StateStore, agent_ref: str) -> dict:
    """An agent's result, read from its output file when not folded yet."""
    state = store.load()
    agent = get_agent(state, agent_ref)
    result = agent.result
    if result is None and agent.output_file.exists():
        try:
            result = claude.to_agent_result(claude.read_output_file(agent.output_file))
        except ClaudeError as e:
            logger.debug("Output of agent %s not readable yet: %s", agent.name, e)
    pane_output = None
    if result is None and agent.tmux_pane:
        try:
            pane_output = tmux.capture(agent.tmux_pane)
        except tmux.TmuxError as e:
            logger.debug("Cannot capture pane of agent %s: %s", agent.name, e)
    return {
        "agent_id": agent.id,
        "name": agent.name,
        "status": str(agent.status),
        "output_file": str(agent.output_file),
        "result": result.to_dict() if result else None,
        "pane_output": pane_output,
    }


# ── Teardown ─────────────────────────────────────────────────────────────────


def _kill_pane_quietly(pane: str) -> None:
    try:
        tmux.kill_pane(pane)
    except tmux.TmuxError as e:
        logger.warning("Failed to kill pane %s: %s", pane, e)


def _teardown_agent(agent: Agent) -> None:
    if agent.mode is AgentMode.SHELL and agent.tmux_pane:
        try:
            tmux.kill_window(agent.tmux_pane)
        except tmux.TmuxError as e:
            logger.warning("Failed to kill shell window %s: %s", agent.name, e)
    elif agent.tmux_pane:
        _kill_pane_quietly(agent.tmux_pane)
    if agent.pid and not agent.is_done:
        claude.terminate(agent.pid)


def kill_agent(store: StateStore, agent_ref: str) -> dict:
    """Stop an agent's pane, window or process.

    Live agents are marked failed; shells and finished agents are removed.
    """
    state = store.load()
    agent = get_agent(state, agent_ref)
    _teardown_agent(agent)

    with store.transaction() as current:
        live = current.find_agent(agent.id)
        if live is None:
            return {"killed": True, "agent_id": agent.id, "removed": True}
        if live.mode is AgentMode.SHELL or live.is_done:
            current.remove_agent(live.id)
            removed = True
        else:
            live.set_status(AgentStatus.failed(KILLED))
            live.tmux_pane = None
            removed = False

    logger.info("Killed agent %s", agent.name)
    return {"killed": True, "agent_id": agent.id, "name": agent.name, "removed": removed}


def agent_summary(agent: Agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "mode": str(agent.mode),
        "status": str(agent.status),
        "session_id": agent.parent_session,
        "template": agent.template,
        "pane": agent.tmux_pane,
        "pid": agent.pid,
        "summary": agent.result.summary if agent.result else None,
        "created_at": agent.created_at.isoformat(),
    }
