"""Output watcher: turns headless agent output files into completion events."""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path

from watchfiles import Change, watch

from vibe_orchestrator.db.models import OUTPUT_FILE_NAME, AgentResult
from vibe_orchestrator.integrations.claude import ClaudeError, read_output_file, to_agent_result

logger = logging.getLogger(__name__)


@dataclass
class AgentCompleted:
    agent_id: str
    result: AgentResult


@dataclass
class AgentOutputWritten:
    path: Path


WatcherEvent = AgentCompleted | AgentOutputWritten


def agent_id_from_path(path: Path) -> str | None:
    """The owning agent id is the parent directory name when it is a UUID."""
    try:
        return str(uuid.UUID(path.parent.name))
    except ValueError:
        return None


class OutputWatcher:
    """Watches the agents directory in a daemon thread.

    Events go into a bounded queue with a non-blocking put; when the queue is
    full the event is dropped and reconciliation recovers the state later.
    """

    def __init__(self, agents_dir: Path, events: "queue.Queue[WatcherEvent]"):
        self.agents_dir = Path(agents_dir)
        self.events = events
        self.dropped = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="output-watcher", daemon=True)
        self._thread.start()
        logger.info("Watching %s for agent output", self.agents_dir)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _run(self):
        try:
            for changes in watch(self.agents_dir, stop_event=self._stop_event, recursive=True):
                for change, path in changes:
                    self.handle_change(change, Path(path))
        except Exception:
            logger.exception("Output watcher stopped unexpectedly")

    def handle_change(self, change: Change, path: Path) -> WatcherEvent | None:
        """Map one filesystem change to an event and enqueue it."""
        if change not in (Change.added, Change.modified) or path.name != OUTPUT_FILE_NAME:
            return None

        agent_id = agent_id_from_path(path)
        if agent_id is None:
            event: WatcherEvent = AgentOutputWritten(path=path)
        else:
            try:
                if path.stat().st_size == 0:
                    return None
                output = read_output_file(path)
            except (OSError, ClaudeError) as e:
                logger.warning("Failed to parse output of agent %s: %s", agent_id, e)
                return None
            logger.info("Agent output detected for %s", agent_id)
            event = AgentCompleted(agent_id=agent_id, result=to_agent_result(output))

        self.emit(event)
        return event

    def emit(self, event: WatcherEvent) -> bool:
        try:
            self.events.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.debug("Event queue full, dropped %s", event)
            return False
