"""MCP server exposing vibe session and agent tools."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from vibe_orchestrator.config import Config, get_config
from vibe_orchestrator.core import agents as agents_mod
from vibe_orchestrator.core import sessions as sessions_mod
from vibe_orchestrator.core.monitor import Supervisor
from vibe_orchestrator.db.state import StateError, StateStore, get_store
from vibe_orchestrator.integrations.claude import ClaudeError
from vibe_orchestrator.integrations.tmux import TmuxError

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    store: StateStore
    config: Config
    supervisor: Supervisor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Run a supervisor (without nav bindings) for the lifetime of the server."""
    config = get_config()
    store = get_store(config)

    supervisor = None
    if store.is_initialized():
        supervisor = Supervisor(store, config, manage_nav=False)
        try:
            supervisor.start()
        except (StateError, TmuxError) as e:
            logger.warning("Supervisor not started: %s", e)
            supervisor = None

    try:
        yield AppContext(store=store, config=config, supervisor=supervisor)
    finally:
        if supervisor:
            supervisor.stop()


mcp = FastMCP("vibe", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Workspace Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def workspace_status(ctx: Context) -> dict:
    """Workspace overview: kind, tmux session, session counts and running agents."""
    try:
        state = _ctx(ctx).store.load()
    except StateError as e:
        return {"error": str(e)}
    return sessions_mod.workspace_status(state)


@mcp.tool()
def list_sessions(ctx: Context, status: str | None = None) -> list[dict]:
    """List sessions, optionally filtered by status (Active, Paused, Failed, ...)."""
    state = _ctx(ctx).store.load()
    sessions = state.sessions
    if status:
        sessions = [s for s in sessions if s.status.state.value.lower() == status.lower()]
    return [sessions_mod.session_summary(state, s) for s in sessions]


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def spawn_agent(
    ctx: Context,
    prompt: str,
    session: str | None = None,
    template: str | None = None,
    interactive: bool = False,
    name: str | None = None,
) -> dict:
    """Spawn a sub-agent in a session's worktree.

    Headless agents (the default) run in the background; poll
    get_agent_output for their result. Interactive agents open a new pane.
    """
    app = _ctx(ctx)
    try:
        agent = agents_mod.spawn_agent(
            app.store, app.config, prompt,
            session_name=session,
            template=template,
            interactive=interactive,
            name=name,
        )
    except (ValueError, StateError, TmuxError, ClaudeError) as e:
        return {"error": str(e)}
    return agents_mod.agent_summary(agent)


@mcp.tool()
def get_agent_output(ctx: Context, agent_id: str) -> dict:
    """Get an agent's status and result (None while it is still running)."""
    try:
        return agents_mod.get_agent_output(_ctx(ctx).store, agent_id)
    except (ValueError, StateError) as e:
        return {"error": str(e)}


@mcp.tool()
def mark_agent_ingested(ctx: Context, agent_id: str) -> dict:
    """Mark a completed agent's result as consumed."""
    try:
        agent = agents_mod.mark_ingested(_ctx(ctx).store, agent_id)
    except (ValueError, StateError) as e:
        return {"error": str(e)}
    return agents_mod.agent_summary(agent)


@mcp.tool()
def kill_agent(ctx: Context, agent_id: str) -> dict:
    """Stop an agent's pane, shell window or background process."""
    try:
        return agents_mod.kill_agent(_ctx(ctx).store, agent_id)
    except (ValueError, StateError) as e:
        return {"error": str(e)}
