"""Tests for the output watcher's change handling."""

import json
import queue
import tempfile
import uuid
from pathlib import Path

import pytest
from watchfiles import Change

from vibe_orchestrator.core.watcher import (
    AgentCompleted,
    AgentOutputWritten,
    OutputWatcher,
    agent_id_from_path,
)

SUCCESS = {
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "duration_ms": 1500,
    "num_turns": 3,
    "result": "Added the login form",
    "session_id": "abc-123",
}


@pytest.fixture
def agents_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


def _write_output(agents_dir: Path, agent_id: str, content: str) -> Path:
    path = agents_dir / agent_id / "output.json"
    path.parent.mkdir(parents=True)
    path.write_text(content)
    return path


class TestHandleChange:
    def test_completed_event(self, agents_dir):
        events = queue.Queue(maxsize=8)
        watcher = OutputWatcher(agents_dir, events)
        agent_id = str(uuid.uuid4())
        path = _write_output(agents_dir, agent_id, json.dumps(SUCCESS))

        event = watcher.handle_change(Change.added, path)

        assert isinstance(event, AgentCompleted)
        assert event.agent_id == agent_id
        assert event.result.success is True
        assert event.result.summary == "Added the login form"
        assert event.result.session_id == "abc-123"
        assert events.get_nowait() is event

    def test_error_record_is_unsuccessful(self, agents_dir):
        watcher = OutputWatcher(agents_dir, queue.Queue())
        record = {**SUCCESS, "subtype": "error_max_turns", "is_error": True}
        path = _write_output(agents_dir, str(uuid.uuid4()), json.dumps(record))
        event = watcher.handle_change(Change.modified, path)
        assert event.result.success is False

    def test_non_uuid_dir_emits_output_written(self, agents_dir):
        watcher = OutputWatcher(agents_dir, queue.Queue())
        path = _write_output(agents_dir, "scratch", json.dumps(SUCCESS))
        event = watcher.handle_change(Change.added, path)
        assert isinstance(event, AgentOutputWritten)
        assert event.path == path

    def test_other_files_ignored(self, agents_dir):
        events = queue.Queue()
        watcher = OutputWatcher(agents_dir, events)
        path = agents_dir / str(uuid.uuid4()) / "stderr.log"
        assert watcher.handle_change(Change.added, path) is None
        assert events.empty()

    def test_deletes_ignored(self, agents_dir):
        watcher = OutputWatcher(agents_dir, queue.Queue())
        path = agents_dir / str(uuid.uuid4()) / "output.json"
        assert watcher.handle_change(Change.deleted, path) is None

    def test_empty_file_skipped(self, agents_dir):
        watcher = OutputWatcher(agents_dir, queue.Queue())
        path = _write_output(agents_dir, str(uuid.uuid4()), "")
        assert watcher.handle_change(Change.added, path) is None

    def test_malformed_output_dropped(self, agents_dir):
        events = queue.Queue()
        watcher = OutputWatcher(agents_dir, events)
        path = _write_output(agents_dir, str(uuid.uuid4()), '{"type": "result"')
        assert watcher.handle_change(Change.modified, path) is None
        assert events.empty()

    def test_full_queue_drops_event(self, agents_dir):
        events = queue.Queue(maxsize=1)
        watcher = OutputWatcher(agents_dir, events)
        for _ in range(2):
            path = _write_output(agents_dir, str(uuid.uuid4()), json.dumps(SUCCESS))
            watcher.handle_change(Change.added, path)
        assert events.qsize() == 1
        assert watcher.dropped == 1


class TestAgentIdFromPath:
    def test_uuid_parent(self):
        agent_id = str(uuid.uuid4())
        assert agent_id_from_path(Path("/x") / agent_id / "output.json") == agent_id

    def test_non_uuid_parent(self):
        assert agent_id_from_path(Path("/x/agents/output.json")) is None
