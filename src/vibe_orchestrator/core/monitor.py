"""Supervisor: the single control path that folds events and reconciles state."""

import logging
import queue
import threading
import time

from vibe_orchestrator.config import Config
from vibe_orchestrator.core.agents import fold_completion
from vibe_orchestrator.core.reconcile import Reconciler, reconcile_all
from vibe_orchestrator.core.sessions import ensure_main_session, resume_sessions
from vibe_orchestrator.core.watcher import AgentCompleted, AgentOutputWritten, OutputWatcher
from vibe_orchestrator.db.models import Agent
from vibe_orchestrator.db.state import StateStore
from vibe_orchestrator.integrations import tmux

logger = logging.getLogger(__name__)


class Supervisor:
    """Background thread that keeps persisted state in step with reality.

    Startup runs a full reconciliation sweep, restores the main session and
    lost windows, installs the nav bindings and starts the output watcher.
    Each tick then drains watcher events, checks one agent and periodically
    re-verifies the nav bindings.
    """

    def __init__(
        self,
        store: StateStore,
        config: Config,
        manage_nav: bool = True,
        resume: bool = True,
    ):
        self.store = store
        self.config = config
        self.manage_nav = manage_nav
        self.resume = resume
        self.events: queue.Queue = queue.Queue(maxsize=config.event_queue_size)
        self.watcher = OutputWatcher(store.agents_dir, self.events)
        self.reconciler = Reconciler(store)
        self.notices: list[str] = []
        self._tmux_session: str | None = None
        self._last_nav_check = 0.0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def startup(self) -> list[str]:
        tmux.configure(timeout=self.config.tmux_timeout)
        has_tmux = tmux.is_available()
        notices = []
        if has_tmux:
            notices += reconcile_all(self.store)
        else:
            logger.warning("tmux not found; skipping reconciliation, resume and nav bindings")

        with self.store.transaction() as state:
            self._tmux_session = state.tmux_session_name
            if ensure_main_session(state):
                notices.append("Main session created")

        if has_tmux and self.resume:
            notices += resume_sessions(self.store, self.config)

        if has_tmux and self.manage_nav:
            self._setup_nav()

        self.watcher.start()
        self.notices += notices
        return notices

    def start(self):
        """Run startup, then the tick loop in a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self.startup()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="vibe-supervisor", daemon=True)
        self._thread.start()
        logger.info("Supervisor started")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        self.watcher.stop()
        if self.manage_nav:
            tmux.cleanup_nav_bindings(self.store.nav_lock_file)
        logger.info("Supervisor stopped")

    def run_forever(self):
        """Run in the calling thread until ``stop`` is signalled."""
        self.startup()
        self._run()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in supervisor loop")
            self._stop_event.wait(self.config.tick_interval)

    def tick(self) -> list[str]:
        notices = self.drain_events()
        notices += self.reconciler.tick()
        if self.manage_nav and time.monotonic() - self._last_nav_check >= self.config.refresh_interval:
            self._verify_nav()
        self.notices += notices
        return notices

    def drain_events(self) -> list[str]:
        notices = []
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                break
            if isinstance(event, AgentCompleted):
                agent = fold_completion(self.store, event.agent_id, event.result)
                if agent is not None:
                    notices.append(f"Agent '{agent.name}': {agent.status}")
                    self._notify(agent)
            elif isinstance(event, AgentOutputWritten):
                logger.debug("Output written at %s", event.path)
        return notices

    # ── Nav bindings ─────────────────────────────────────────────────────────

    def _setup_nav(self):
        try:
            tmux.ensure_session(self._tmux_session, self.store.workspace_root)
            tmux.set_escape_time()
            tmux.setup_nav_bindings(
                self._tmux_session,
                self.config.dashboard_key,
                self.config.overview_key,
                self.store.nav_lock_file,
            )
        except tmux.TmuxError as e:
            logger.warning("Could not install nav bindings: %s", e)
        self._last_nav_check = time.monotonic()

    def _verify_nav(self):
        self._last_nav_check = time.monotonic()
        try:
            tmux.ensure_nav_bindings(
                self._tmux_session,
                self.config.dashboard_key,
                self.config.overview_key,
                self.store.nav_lock_file,
            )
        except tmux.TmuxError as e:
            logger.warning("Nav binding check failed: %s", e)

    # ── Notifications ────────────────────────────────────────────────────────

    def _notify(self, agent: Agent):
        """Send a Slack notification for an agent completion (best-effort)."""
        if not (self.config.slack_bot_token and self.config.slack_channel):
            return
        try:
            from vibe_orchestrator.integrations.slack import (
                format_agent_notification,
                send_message,
            )

            state = self.store.load()
            session = state.find_session_by_id(agent.parent_session)
            result = agent.result
            blocks = format_agent_notification(
                agent.name,
                agent.id,
                session.name if session else "?",
                bool(result and result.success),
                result.summary if result else "",
            )
            send_message(
                self.config.slack_bot_token,
                self.config.slack_channel,
                f"Agent {agent.name}: {agent.status}",
                blocks=blocks,
            )
        except Exception:
            logger.exception("Failed to send Slack notification for agent completion")
