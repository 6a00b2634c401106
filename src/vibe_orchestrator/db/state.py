"""JSON state document persistence and the managed directory layout."""

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path

from vibe_orchestrator.db.models import WorkspaceState

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "workspace.json"
LOCK_FILE_NAME = "state.lock"
NAV_LOCK_FILE_NAME = "nav_bindings.lock"


class StateError(Exception):
    """Raised when the state document cannot be read or parsed."""


class NotInitializedError(StateError):
    """Raised when the workspace has no state document yet."""


def atomic_write_text(path: Path, text: str) -> None:
    """Write through a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


class StateStore:
    """Owns ``<workspace>/.vibe/`` and the aggregate state document inside it."""

    def __init__(self, workspace_root: str | Path, state_dir_name: str = ".vibe"):
        self.workspace_root = Path(workspace_root)
        self.state_dir_name = state_dir_name
        self.state_dir = self.workspace_root / state_dir_name
        self.state_file = self.state_dir / STATE_FILE_NAME
        self.lock_file = self.state_dir / LOCK_FILE_NAME

    @property
    def agents_dir(self) -> Path:
        return self.state_dir / "agents"

    @property
    def plans_dir(self) -> Path:
        return self.state_dir / "plans"

    @property
    def templates_dir(self) -> Path:
        return self.state_dir / "templates"

    @property
    def nav_lock_file(self) -> Path:
        return self.state_dir / NAV_LOCK_FILE_NAME

    def is_initialized(self) -> bool:
        return self.state_file.exists()

    def init(self) -> None:
        """Create the directory skeleton and make sure git ignores it."""
        for d in (self.state_dir, self.agents_dir, self.plans_dir, self.templates_dir):
            d.mkdir(parents=True, exist_ok=True)
        self.ensure_gitignore()

    def ensure_gitignore(self) -> bool:
        """Append the managed directory to .gitignore unless already listed."""
        gitignore = self.workspace_root / ".gitignore"
        entry = f"{self.state_dir_name}/"
        block = f"# Vibe agent orchestrator\n{entry}\n"

        if gitignore.exists():
            content = gitignore.read_text()
            if entry in content.splitlines():
                return False
            sep = "\n" if content and not content.endswith("\n") else ""
            with gitignore.open("a") as f:
                f.write(f"{sep}\n{block}")
        else:
            gitignore.write_text(block)
        logger.debug("Added %s to %s", entry, gitignore)
        return True

    # ── Load / save ──────────────────────────────────────────────────────────

    def load(self) -> WorkspaceState:
        if not self.state_file.exists():
            raise NotInitializedError(
                f"No workspace state at {self.state_file}. Run 'vibe init' first."
            )
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            return WorkspaceState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StateError(f"Failed to read {self.state_file}: {e}") from e

    def save(self, state: WorkspaceState) -> None:
        text = json.dumps(state.to_dict(), indent=2) + "\n"
        atomic_write_text(self.state_file, text)

    @contextmanager
    def lock(self):
        """Hold an exclusive advisory lock shared by every orchestrator process."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self.lock_file.open("a+b") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def transaction(self):
        """Load under the lock, yield the state, save only if it changed."""
        with self.lock():
            state = self.load()
            before = state.to_dict()
            yield state
            if state.to_dict() != before:
                self.save(state)


def find_workspace_root(start: str | Path, state_dir_name: str = ".vibe") -> Path | None:
    """Nearest directory at or above ``start`` holding an initialized state document."""
    start = Path(start).resolve()
    for candidate in (start, *start.parents):
        if (candidate / state_dir_name / STATE_FILE_NAME).exists():
            return candidate
    return None


def get_store(config) -> StateStore:
    """Store for the workspace containing the configured root (or the root itself)."""
    root = find_workspace_root(config.workspace_root, config.state_dir_name)
    return StateStore(root or Path(config.workspace_root).resolve(), config.state_dir_name)
