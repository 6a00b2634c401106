"""CLI entry point for the vibe orchestrator."""

import json
import logging
import signal
import sys
from contextlib import contextmanager

import click

from vibe_orchestrator.config import get_config
from vibe_orchestrator.core import agents as agents_mod
from vibe_orchestrator.core import sessions as sessions_mod
from vibe_orchestrator.core import templates as templates_mod
from vibe_orchestrator.core.doctor import run_doctor
from vibe_orchestrator.db.state import StateError, get_store
from vibe_orchestrator.integrations.claude import ClaudeError
from vibe_orchestrator.integrations.git import GitError
from vibe_orchestrator.integrations.tmux import TmuxError


def _get_store():
    return get_store(get_config())


@contextmanager
def _errors():
    """Report domain and collaborator failures as ``Error: ...`` and exit 1."""
    try:
        yield
    except (ValueError, StateError, GitError, TmuxError, ClaudeError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """vibe - parallel coding agents in git worktrees and tmux windows"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.command("init")
def init_cmd():
    """Initialize vibe in the current repository or multi-repo directory."""
    with _errors():
        result = sessions_mod.init_workspace(get_config())
    if not result["initialized"]:
        click.echo(f"Vibe is already initialized in {result['root']}.")
        return
    click.echo(f"Vibe initialized ({result['kind']}) in {result['root']}")
    if result["repos"]:
        click.echo(f"  Discovered {len(result['repos'])} repositories: {', '.join(result['repos'])}")
    click.echo(f"  tmux session: {result['tmux_session']}")
    click.echo("  Run `vibe new <name>` to create your first session")


@main.command("refresh-repos")
def refresh_repos_cmd():
    """Re-discover the repositories of a multi-repo workspace."""
    with _errors():
        result = sessions_mod.refresh_repos(_get_store())
    if not result["refreshed"]:
        click.echo(f"{result['reason']}. Nothing to refresh.")
        return
    if not result["added"] and not result["removed"]:
        click.echo(f"No changes. {len(result['repos'])} repos tracked.")
        return
    if result["added"]:
        click.echo(f"Added: {', '.join(result['added'])}")
    if result["removed"]:
        click.echo(f"Removed: {', '.join(result['removed'])}")
    click.echo(f"Now tracking {len(result['repos'])} repos. Existing sessions are not affected.")


# ── Session Commands ──────────────────────────────────────────────────────────


@main.command("new")
@click.argument("name")
@click.option("--branch", "-b", default=None, help="Branch name (default: feat/<name>)")
@click.option("--base", default=None, help="Base ref (default: origin's default branch)")
@click.option("--template", "-t", default=None, help="Agent template for the system prompt")
@click.option("--system-prompt", default=None, help="System prompt override")
@click.option("--headless", is_flag=True, help="Run a one-shot agent instead of an interactive one")
@click.option("--prompt", "-p", default=None, help="Initial prompt (required with --headless)")
def new_cmd(name, branch, base, template, system_prompt, headless, prompt):
    """Create a session: worktree, tmux window and agent."""
    config = get_config()
    with _errors():
        result = sessions_mod.create_session(
            _get_store(), config, name,
            branch=branch,
            base=base,
            template=template,
            system_prompt=system_prompt,
            headless=headless,
            prompt=prompt,
        )
    for warning in result["warnings"]:
        click.echo(f"Warning: {warning}", err=True)
    click.echo(f"Session '{result['session']}' is ready")
    click.echo(f"  Branch: {result['branch']}")
    click.echo(f"  Worktree: {result['worktree_path']}")
    for repo, path in result["repo_worktrees"].items():
        click.echo(f"    {repo}: {path}")
    click.echo(f"  Window: {result['window']}")


@main.command("kill")
@click.argument("name")
@click.option("--force", "-f", is_flag=True, help="Kill even if the session is active")
@click.option("--delete-branch", is_flag=True, help="Also delete the session branch")
def kill_cmd(name, force, delete_branch):
    """Kill a session and remove its worktree."""
    with _errors():
        result = sessions_mod.kill_session(_get_store(), name, force=force, delete_branch=delete_branch)
    if not result["killed"]:
        click.echo(result["reason"])
        return
    for warning in result["warnings"]:
        click.echo(f"  Warning: {warning}", err=True)
    click.echo(f"Session '{name}' killed.")


@main.command("cleanup")
@click.option("--all", "include_completed", is_flag=True, help="Also remove completed sessions")
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
def cleanup_cmd(include_completed, dry_run):
    """Remove archived sessions and their worktrees."""
    with _errors():
        result = sessions_mod.cleanup_sessions(
            _get_store(), include_completed=include_completed, dry_run=dry_run
        )
    if not result["sessions"]:
        click.echo("Nothing to clean up.")
        return
    verb = "Would remove" if dry_run else "Removed"
    click.echo(f"{verb} {len(result['sessions'])} session(s):")
    for s in result["sessions"]:
        click.echo(f"  {s['name']} [{s['status']}] {s['worktree_path']}")
    for warning in result["warnings"]:
        click.echo(f"  Warning: {warning}", err=True)
    if dry_run:
        click.echo("\nDry run - no changes made. Remove --dry-run to execute.")


@main.command("attach")
@click.argument("name", required=False)
def attach_cmd(name):
    """Attach to a session's tmux window (latest active by default)."""
    with _errors():
        code = sessions_mod.attach_session(_get_store(), name)
    sys.exit(code)


@main.command("status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_cmd(json_output):
    """Show workspace, sessions and agents."""
    with _errors():
        state = _get_store().load()
    status = sessions_mod.workspace_status(state)

    if json_output:
        status["agents"] = [agents_mod.agent_summary(a) for a in state.agents]
        click.echo(json.dumps(status, indent=2))
        return

    click.echo(f"Workspace: {status['workspace']} ({status['kind']})")
    click.echo(f"  Root: {status['root']}")
    click.echo(f"  tmux session: {status['tmux_session']}")
    if not state.sessions:
        click.echo("\nNo sessions. Run `vibe new <name>` to create one.")
        return
    click.echo("")
    for session in state.sessions:
        main_flag = " (main)" if session.is_main else ""
        click.echo(f"  {session.name}{main_flag} [{session.status}] {session.branch}")
        for agent in state.agents_for_session(session.id):
            click.echo(f"    {agent.id[:8]} {agent.name} ({agent.mode}) [{agent.status}]")


# ── List Commands ─────────────────────────────────────────────────────────────


@main.group("list")
def list_group():
    """List sessions, agents or templates."""
    pass


@list_group.command("sessions")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_sessions(json_output):
    """List sessions."""
    with _errors():
        state = _get_store().load()
    rows = [sessions_mod.session_summary(state, s) for s in state.sessions]
    if json_output:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No sessions found.")
        return
    for row in rows:
        click.echo(f"  {row['name']} [{row['status']}] {row['branch']} ({row['agents']} agents)")


@list_group.command("agents")
@click.option("--session", "-s", default=None, help="Only agents of this session")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_agents(session, json_output):
    """List agents."""
    with _errors():
        state = _get_store().load()
        agents = state.agents
        if session:
            agents = state.agents_for_session(sessions_mod.get_session(state, session).id)
    rows = [agents_mod.agent_summary(a) for a in agents]
    if json_output:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No agents found.")
        return
    for row in rows:
        click.echo(f"  {row['id'][:8]} {row['name']} ({row['mode']}) [{row['status']}]")


@list_group.command("templates")
def list_templates():
    """List available agent templates."""
    config = get_config()
    store = _get_store()
    for tmpl in templates_mod.list_templates(config.template_search_dirs(store.workspace_root)):
        click.echo(f"  {tmpl.name} ({tmpl.mode}): {tmpl.description}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.command("spawn")
@click.argument("prompt")
@click.option("--session", "-s", default=None, help="Parent session (default: latest active)")
@click.option("--template", "-t", default=None, help="Agent template")
@click.option("--interactive/--headless", default=None, help="Run in a pane or in the background")
@click.option("--name", default=None, help="Agent name")
def spawn_cmd(prompt, session, template, interactive, name):
    """Spawn a sub-agent in a session."""
    with _errors():
        agent = agents_mod.spawn_agent(
            _get_store(), get_config(), prompt,
            session_name=session,
            template=template,
            interactive=interactive,
            name=name,
        )
    click.echo(f"Spawned {agent.mode} agent '{agent.name}' ({agent.id})")
    if agent.pid:
        click.echo(f"  PID: {agent.pid}")
        click.echo(f"  Output: {agent.output_file}")
    if agent.tmux_pane:
        click.echo(f"  Pane: {agent.tmux_pane}")


@main.command("shell")
@click.argument("session", required=False)
def shell_cmd(session):
    """Open a shell window in a session's worktree."""
    with _errors():
        agent = agents_mod.open_shell(_get_store(), session)
    click.echo(f"Opened shell '{agent.name}' (pane {agent.tmux_pane})")


@main.command("kill-agent")
@click.argument("agent_id")
def kill_agent_cmd(agent_id):
    """Stop an agent (pane, shell window or background process)."""
    with _errors():
        result = agents_mod.kill_agent(_get_store(), agent_id)
    suffix = " and removed" if result["removed"] else ""
    click.echo(f"Agent {result['agent_id'][:8]} killed{suffix}.")


@main.command("output")
@click.argument("agent_id")
@click.option("--ingest/--no-ingest", default=True, help="Mark the result as consumed")
def output_cmd(agent_id, ingest):
    """Print an agent's result."""
    store = _get_store()
    with _errors():
        output = agents_mod.get_agent_output(store, agent_id)
        if output["result"] is None and output["pane_output"]:
            click.echo(output["pane_output"])
            return
        if output["result"] is None:
            click.echo(f"No output yet for agent {agent_id} [{output['status']}]", err=True)
            sys.exit(1)
        click.echo(output["result"]["raw_result"] or output["result"]["summary"])
        if ingest and output["status"] in ("Completed", "Ingested"):
            agents_mod.mark_ingested(store, output["agent_id"])


# ── Maintenance Commands ──────────────────────────────────────────────────────


@main.command("doctor")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def doctor_cmd(json_output):
    """Check tools, reconcile state and find orphaned worktrees."""
    with _errors():
        report = run_doctor(_get_store(), get_config())
    if json_output:
        click.echo(json.dumps(report.to_dict(), indent=2))
        sys.exit(0 if report.healthy else 1)

    click.echo("vibe doctor: checking workspace health\n")
    for tool, found in report.tools.items():
        click.echo(f"  {tool}: {'ok' if found else 'NOT FOUND'}")
    if report.initialized:
        running = "running" if report.tmux_running else "not running"
        click.echo("  state: ok")
        click.echo(f"  tmux session '{report.tmux_session}': {running}")
    for notice in report.fixed:
        click.echo(f"  fixed: {notice}")
    for issue in report.issues:
        click.echo(f"  issue: {issue}")
    if report.healthy and not report.fixed:
        click.echo("\nAll clear.")
    else:
        click.echo(f"\n{len(report.issues)} issue(s) found, {len(report.fixed)} auto-fixed.")
    sys.exit(0 if report.healthy else 1)


@main.command("watch")
def watch_cmd():
    """Run the supervisor in the foreground (reconcile, fold results, nav keys)."""
    from vibe_orchestrator.core.monitor import Supervisor

    config = get_config()
    store = _get_store()
    if not store.is_initialized():
        click.echo("Error: workspace not initialized. Run `vibe init` first.", err=True)
        sys.exit(1)
    with _errors():
        sessions_mod.require_tools("git", "tmux", "claude")

    supervisor = Supervisor(store, config)

    def _shutdown(signum, frame):
        supervisor.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGHUP, _shutdown)

    click.echo(f"Watching {store.workspace_root} (Ctrl-C to stop)")
    try:
        with _errors():
            supervisor.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        supervisor.stop()


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("web")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8788, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=False, help="Open browser automatically")
def web_command(host, port, open):
    """Serve the read-only status dashboard."""
    import webbrowser

    from vibe_orchestrator.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from vibe_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
