"""Reconciliation: repair drift between persisted state and tmux / filesystem reality.

A full sweep runs at startup and from ``vibe doctor``; the supervisor then
calls ``Reconciler.tick`` which checks one agent per call, round-robin.
Reconciliation never raises to the caller: tmux failures are logged and the
entity is left for a later pass.
"""

import logging

from vibe_orchestrator.core.agents import apply_agent_result
from vibe_orchestrator.core.sessions import resolve_window
from vibe_orchestrator.db.models import (
    ARCHIVED,
    PAUSED,
    Agent,
    AgentMode,
    AgentState,
    AgentStatus,
    Session,
    SessionState,
    SessionStatus,
    WorkspaceState,
)
from vibe_orchestrator.db.state import StateStore
from vibe_orchestrator.integrations import claude, tmux
from vibe_orchestrator.integrations.claude import ClaudeError, read_output_file, to_agent_result

logger = logging.getLogger(__name__)

WORKTREE_MISSING = "working copy missing"
PANE_LOST = "pane lost"
NO_OUTPUT = "process exited without output"


def reconcile_session(
    session: Session, worktree_exists: bool, window_exists: bool
) -> SessionStatus | None:
    """Corrected status for a session, or None when it is consistent."""
    current = session.status.state
    if current is SessionState.ARCHIVED:
        return None
    if not worktree_exists and not window_exists:
        return ARCHIVED
    if not worktree_exists:
        if current is SessionState.FAILED:
            return None
        return SessionStatus.failed(WORKTREE_MISSING)
    if not window_exists and current is SessionState.ACTIVE:
        return PAUSED
    return None


def check_session(state: WorkspaceState, session: Session) -> str | None:
    """Check one session and apply the correction table. Returns a notice."""
    try:
        window = resolve_window(state, session)
    except tmux.TmuxError as e:
        logger.warning("Cannot check window of session %s: %s", session.name, e)
        return None
    window_exists = window is not None
    if window_exists:
        session.tmux_window = window
    worktree_exists = session.worktree_path.exists()

    new_status = reconcile_session(session, worktree_exists, window_exists)
    if new_status is None:
        return None
    old = session.status
    session.set_status(new_status)
    notice = f"Session '{session.name}': {old} -> {new_status}"
    logger.info(notice)
    return notice


def _process_gone(pid: int) -> bool:
    finished = claude.process_finished(pid)
    if finished is None:
        return not tmux.pid_alive(pid)
    return finished


def needs_check(agent: Agent) -> bool:
    if agent.is_done:
        return False
    if agent.tmux_pane:
        return True
    return agent.mode is AgentMode.HEADLESS and agent.is_running and agent.pid is not None


def check_agent(state: WorkspaceState, agent: Agent) -> str | None:
    """Check one agent's pane or process. Returns a notice when state changed."""
    if agent.is_done:
        return None

    if agent.tmux_pane:
        try:
            alive = tmux.pane_exists(agent.tmux_pane)
        except tmux.TmuxError as e:
            logger.warning("Cannot check pane of agent %s: %s", agent.name, e)
            return None
        if alive:
            return None
        if agent.mode is AgentMode.SHELL:
            state.remove_agent(agent.id)
            notice = f"Shell '{agent.name}' closed, removed"
        else:
            agent.set_status(AgentStatus.failed(PANE_LOST))
            agent.tmux_pane = None
            notice = f"Agent '{agent.name}': pane lost"
        logger.info(notice)
        return notice

    if agent.mode is AgentMode.HEADLESS and agent.is_running and agent.pid:
        if not _process_gone(agent.pid):
            return None
        try:
            result = to_agent_result(read_output_file(agent.output_file))
        except ClaudeError as e:
            logger.info("Agent %s exited without usable output: %s", agent.name, e)
            agent.set_status(AgentStatus.failed(NO_OUTPUT))
            return f"Agent '{agent.name}': {NO_OUTPUT}"
        apply_agent_result(agent, result)
        return f"Agent '{agent.name}': {agent.status}"

    return None


def full_sweep(state: WorkspaceState) -> list[str]:
    """Check every live session and agent in memory. Returns notices."""
    notices = []
    for session in list(state.sessions):
        if session.is_archived:
            continue
        if notice := check_session(state, session):
            notices.append(notice)

    for agent in list(state.agents):
        if agent.status.state in (AgentState.QUEUED, AgentState.RUNNING):
            if notice := check_agent(state, agent):
                notices.append(notice)
    return notices


def reconcile_all(store: StateStore) -> list[str]:
    """Full sweep under the state lock; persists once if anything changed."""
    with store.transaction() as state:
        return full_sweep(state)


class Reconciler:
    """Incremental reconciliation with a cursor carried across ticks."""

    def __init__(self, store: StateStore):
        self.store = store
        self.cursor = 0

    def next_agent(self, state: WorkspaceState) -> Agent | None:
        """Advance the cursor to the next agent worth checking."""
        count = len(state.agents)
        for _ in range(count):
            index = self.cursor % count
            self.cursor = (index + 1) % count
            agent = state.agents[index]
            if needs_check(agent):
                return agent
        return None

    def tick(self) -> list[str]:
        with self.store.transaction() as state:
            agent = self.next_agent(state)
            if agent is None:
                return []
            notice = check_agent(state, agent)
            return [notice] if notice else []
