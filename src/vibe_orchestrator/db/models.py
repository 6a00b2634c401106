"""Data models for the vibe orchestrator and their JSON document form.

The persisted document is the one written by earlier releases: status values are
plain variant names (``"Active"``) except failures, which carry their reason as
``{"Failed": "reason"}``. Fields added in later releases (``kind``, ``repos``,
``repo_worktrees``, ``is_main``) default when absent.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

OUTPUT_FILE_NAME = "output.json"


class InvalidTransitionError(ValueError):
    """Raised when a status change is not an edge of the lifecycle graph."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_json(val: datetime | None) -> str | None:
    if val is None:
        return None
    return val.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    parsed = datetime.fromisoformat(val.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _opt_path(val: str | None) -> Path | None:
    return Path(val) if val else None


# ── Status variants ──────────────────────────────────────────────────────────


class SessionState(str, Enum):
    CREATING = "Creating"
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ARCHIVED = "Archived"


class AgentState(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    INGESTED = "Ingested"


SESSION_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.CREATING: {SessionState.ACTIVE, SessionState.FAILED, SessionState.ARCHIVED},
    SessionState.ACTIVE: {
        SessionState.PAUSED,
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.ARCHIVED,
    },
    SessionState.PAUSED: {SessionState.ACTIVE, SessionState.FAILED, SessionState.ARCHIVED},
    SessionState.COMPLETED: {SessionState.FAILED, SessionState.ARCHIVED},
    SessionState.FAILED: {SessionState.ARCHIVED},
    SessionState.ARCHIVED: set(),
}

AGENT_TRANSITIONS: dict[AgentState, set[AgentState]] = {
    AgentState.QUEUED: {AgentState.RUNNING, AgentState.FAILED},
    AgentState.RUNNING: {AgentState.COMPLETED, AgentState.FAILED},
    AgentState.COMPLETED: {AgentState.INGESTED},
    AgentState.FAILED: set(),
    AgentState.INGESTED: set(),
}


@dataclass(frozen=True)
class SessionStatus:
    """A session status variant; only FAILED carries a reason.

    Compare ``.state`` when only the kind matters.
    """

    state: SessionState
    reason: str | None = None

    @classmethod
    def failed(cls, reason: str) -> "SessionStatus":
        return cls(SessionState.FAILED, reason)

    def __str__(self) -> str:
        if self.state is SessionState.FAILED:
            return f"Failed: {self.reason or ''}"
        return self.state.value

    def to_json(self):
        if self.state is SessionState.FAILED:
            return {"Failed": self.reason or ""}
        return self.state.value

    @classmethod
    def from_json(cls, val) -> "SessionStatus":
        if isinstance(val, dict):
            (kind, reason), = val.items()
            return cls(SessionState(kind), reason)
        return cls(SessionState(val))


@dataclass(frozen=True)
class AgentStatus:
    """An agent status variant; only FAILED carries a reason."""

    state: AgentState
    reason: str | None = None

    @classmethod
    def failed(cls, reason: str) -> "AgentStatus":
        return cls(AgentState.FAILED, reason)

    def __str__(self) -> str:
        if self.state is AgentState.FAILED:
            return f"Failed: {self.reason or ''}"
        return self.state.value

    def to_json(self):
        if self.state is AgentState.FAILED:
            return {"Failed": self.reason or ""}
        return self.state.value

    @classmethod
    def from_json(cls, val) -> "AgentStatus":
        if isinstance(val, dict):
            (kind, reason), = val.items()
            return cls(AgentState(kind), reason)
        return cls(AgentState(val))


ACTIVE = SessionStatus(SessionState.ACTIVE)
CREATING = SessionStatus(SessionState.CREATING)
PAUSED = SessionStatus(SessionState.PAUSED)
COMPLETED = SessionStatus(SessionState.COMPLETED)
ARCHIVED = SessionStatus(SessionState.ARCHIVED)


class WorkspaceKind(str, Enum):
    SINGLE_REPO = "SingleRepo"
    MULTI_REPO = "MultiRepo"


class AgentMode(str, Enum):
    HEADLESS = "Headless"
    INTERACTIVE = "Interactive"
    SHELL = "Shell"

    def __str__(self) -> str:
        return self.value.lower()


# ── Workspace ────────────────────────────────────────────────────────────────


@dataclass
class RepoInfo:
    root: Path
    name: str
    default_branch: str = "main"
    remote_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "root": str(self.root),
            "name": self.name,
            "default_branch": self.default_branch,
            "remote_url": self.remote_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RepoInfo":
        return cls(
            root=Path(data["root"]),
            name=data["name"],
            default_branch=data.get("default_branch", "main"),
            remote_url=data.get("remote_url"),
        )


@dataclass
class Workspace:
    root: Path
    name: str
    default_branch: str = "main"
    remote_url: str | None = None
    worktree_prefix: str = "-vibe-"
    worktree_base_dir: Path = field(default_factory=lambda: Path("."))
    kind: WorkspaceKind = WorkspaceKind.SINGLE_REPO
    repos: list[RepoInfo] = field(default_factory=list)

    def __post_init__(self):
        if (self.kind is WorkspaceKind.MULTI_REPO) != bool(self.repos):
            raise ValueError("a MultiRepo workspace must list its repos, and only it may")

    @property
    def is_multi_repo(self) -> bool:
        return self.kind is WorkspaceKind.MULTI_REPO

    def repo_by_name(self, name: str) -> RepoInfo | None:
        for repo in self.repos:
            if repo.name == name:
                return repo
        return None

    def to_dict(self) -> dict:
        return {
            "root": str(self.root),
            "name": self.name,
            "default_branch": self.default_branch,
            "remote_url": self.remote_url,
            "worktree_prefix": self.worktree_prefix,
            "worktree_base_dir": str(self.worktree_base_dir),
            "kind": self.kind.value,
            "repos": [r.to_dict() for r in self.repos],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Workspace":
        root = Path(data["root"])
        return cls(
            root=root,
            name=data["name"],
            default_branch=data.get("default_branch", "main"),
            remote_url=data.get("remote_url"),
            worktree_prefix=data.get("worktree_prefix", "-vibe-"),
            worktree_base_dir=Path(data.get("worktree_base_dir") or root.parent),
            kind=WorkspaceKind(data.get("kind", WorkspaceKind.SINGLE_REPO.value)),
            repos=[RepoInfo.from_dict(r) for r in data.get("repos", [])],
        )


# ── Session ──────────────────────────────────────────────────────────────────


@dataclass
class Session:
    name: str
    branch: str
    worktree_path: Path
    tmux_window: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SessionStatus = CREATING
    claude_session_id: str | None = None
    template: str | None = None
    system_prompt_override: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    agents: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    is_main: bool = False
    repo_worktrees: dict[str, Path] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status.state in (SessionState.ACTIVE, SessionState.CREATING)

    @property
    def is_archived(self) -> bool:
        return self.status.state is SessionState.ARCHIVED

    def worktree_paths(self) -> list[Path]:
        """Every working copy the session owns (one per repo for multi-repo)."""
        if self.repo_worktrees:
            return list(self.repo_worktrees.values())
        return [self.worktree_path]

    def set_status(self, status: SessionStatus) -> bool:
        """Move along the lifecycle graph. Returns False when nothing changed."""
        if status == self.status:
            return False
        if status.state not in SESSION_TRANSITIONS[self.status.state]:
            raise InvalidTransitionError(
                f"Session '{self.name}' cannot go from {self.status} to {status}"
            )
        self.status = status
        self.updated_at = utcnow()
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "branch": self.branch,
            "worktree_path": str(self.worktree_path),
            "tmux_window": self.tmux_window,
            "status": self.status.to_json(),
            "claude_session_id": self.claude_session_id,
            "template": self.template,
            "system_prompt_override": self.system_prompt_override,
            "created_at": _dt_to_json(self.created_at),
            "updated_at": _dt_to_json(self.updated_at),
            "agents": list(self.agents),
            "metadata": dict(self.metadata),
            "is_main": self.is_main,
            "repo_worktrees": {k: str(v) for k, v in sorted(self.repo_worktrees.items())},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            name=data["name"],
            branch=data["branch"],
            worktree_path=Path(data["worktree_path"]),
            tmux_window=data.get("tmux_window", ""),
            status=SessionStatus.from_json(data["status"]),
            claude_session_id=data.get("claude_session_id"),
            template=data.get("template"),
            system_prompt_override=data.get("system_prompt_override"),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            agents=list(data.get("agents", [])),
            metadata=dict(data.get("metadata") or {}),
            is_main=data.get("is_main", False),
            repo_worktrees={k: Path(v) for k, v in data.get("repo_worktrees", {}).items()},
        )


# ── Agent ────────────────────────────────────────────────────────────────────


@dataclass
class AgentResult:
    success: bool
    summary: str
    duration_ms: int = 0
    session_id: str = ""
    raw_result: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "summary": self.summary,
            "duration_ms": self.duration_ms,
            "session_id": self.session_id,
            "raw_result": self.raw_result,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentResult":
        return cls(
            success=data["success"],
            summary=data["summary"],
            duration_ms=data.get("duration_ms", 0),
            session_id=data.get("session_id", ""),
            raw_result=data.get("raw_result"),
        )


def agent_output_file(output_dir: Path, agent_id: str) -> Path:
    """Canonical artifact path: one directory per agent id."""
    return Path(output_dir) / agent_id / OUTPUT_FILE_NAME


@dataclass
class Agent:
    id: str
    parent_session: str
    name: str
    mode: AgentMode
    prompt: str
    worktree_path: Path
    output_file: Path
    status: AgentStatus = AgentStatus(AgentState.QUEUED)
    template: str | None = None
    system_prompt: str | None = None
    tmux_pane: str | None = None
    pid: int | None = None
    claude_session_id: str | None = None
    result: AgentResult | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @classmethod
    def new(
        cls,
        parent_session: str,
        name: str,
        mode: AgentMode,
        prompt: str,
        worktree_path: Path,
        output_dir: Path,
    ) -> "Agent":
        agent_id = str(uuid.uuid4())
        return cls(
            id=agent_id,
            parent_session=parent_session,
            name=name,
            mode=mode,
            prompt=prompt,
            worktree_path=Path(worktree_path),
            output_file=agent_output_file(output_dir, agent_id),
        )

    @property
    def is_running(self) -> bool:
        return self.status.state is AgentState.RUNNING

    @property
    def is_done(self) -> bool:
        return self.status.state in (
            AgentState.COMPLETED,
            AgentState.FAILED,
            AgentState.INGESTED,
        )

    def set_status(self, status: AgentStatus) -> bool:
        """Move along the lifecycle graph. Returns False when nothing changed."""
        if status == self.status or (
            status.state is AgentState.INGESTED and self.status.state is AgentState.INGESTED
        ):
            return False
        if status.state not in AGENT_TRANSITIONS[self.status.state]:
            raise InvalidTransitionError(
                f"Agent '{self.name}' cannot go from {self.status} to {status}"
            )
        self.status = status
        if self.is_done and self.completed_at is None:
            self.completed_at = utcnow()
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_session": self.parent_session,
            "name": self.name,
            "mode": self.mode.value,
            "status": self.status.to_json(),
            "template": self.template,
            "prompt": self.prompt,
            "system_prompt": self.system_prompt,
            "worktree_path": str(self.worktree_path),
            "tmux_pane": self.tmux_pane,
            "pid": self.pid,
            "claude_session_id": self.claude_session_id,
            "output_file": str(self.output_file),
            "result": self.result.to_dict() if self.result else None,
            "created_at": _dt_to_json(self.created_at),
            "completed_at": _dt_to_json(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Agent":
        result = data.get("result")
        return cls(
            id=data["id"],
            parent_session=data["parent_session"],
            name=data["name"],
            mode=AgentMode(data["mode"]),
            status=AgentStatus.from_json(data["status"]),
            template=data.get("template"),
            prompt=data.get("prompt", ""),
            system_prompt=data.get("system_prompt"),
            worktree_path=Path(data["worktree_path"]),
            tmux_pane=data.get("tmux_pane"),
            pid=data.get("pid"),
            claude_session_id=data.get("claude_session_id"),
            output_file=Path(data["output_file"]),
            result=AgentResult.from_dict(result) if result else None,
            created_at=_parse_dt(data["created_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
        )


# ── Aggregate ────────────────────────────────────────────────────────────────


@dataclass
class WorkspaceState:
    workspace: Workspace
    tmux_session_name: str
    sessions: list[Session] = field(default_factory=list)
    agents: list[Agent] = field(default_factory=list)

    def find_session_by_name(self, name: str) -> Session | None:
        """Prefer the live session; archived ones may share a name."""
        archived = None
        for session in self.sessions:
            if session.name != name:
                continue
            if not session.is_archived:
                return session
            archived = archived or session
        return archived

    def find_session_by_id(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def main_session(self) -> Session | None:
        for session in self.sessions:
            if session.is_main:
                return session
        return None

    def find_agent(self, ref: str) -> Agent | None:
        """Look up an agent by full id or a unique id prefix."""
        for agent in self.agents:
            if agent.id == ref:
                return agent
        matches = [a for a in self.agents if a.id.startswith(ref)] if len(ref) >= 4 else []
        if len(matches) == 1:
            return matches[0]
        return None

    def agents_for_session(self, session_id: str) -> list[Agent]:
        return [a for a in self.agents if a.parent_session == session_id]

    def active_sessions(self) -> list[Session]:
        return [s for s in self.sessions if s.is_active]

    def running_agents(self) -> list[Agent]:
        return [a for a in self.agents if a.is_running]

    def remove_session(self, session_id: str) -> Session | None:
        """Drop a session and every agent it owns."""
        session = self.find_session_by_id(session_id)
        if session is None:
            return None
        self.sessions = [s for s in self.sessions if s.id != session_id]
        self.agents = [a for a in self.agents if a.parent_session != session_id]
        return session

    def remove_agent(self, agent_id: str) -> Agent | None:
        agent = self.find_agent(agent_id)
        if agent is None:
            return None
        self.agents = [a for a in self.agents if a.id != agent.id]
        parent = self.find_session_by_id(agent.parent_session)
        if parent and agent.id in parent.agents:
            parent.agents.remove(agent.id)
        return agent

    def to_dict(self) -> dict:
        return {
            "workspace": self.workspace.to_dict(),
            "sessions": [s.to_dict() for s in self.sessions],
            "agents": [a.to_dict() for a in self.agents],
            "tmux_session_name": self.tmux_session_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceState":
        return cls(
            workspace=Workspace.from_dict(data["workspace"]),
            sessions=[Session.from_dict(s) for s in data.get("sessions", [])],
            agents=[Agent.from_dict(a) for a in data.get("agents", [])],
            tmux_session_name=data["tmux_session_name"],
        )
