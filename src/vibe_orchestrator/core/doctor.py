"""Workspace health check: tools, state, reconciliation and orphaned worktrees."""

import logging
import shutil
from dataclasses import dataclass, field

from vibe_orchestrator.config import Config
from vibe_orchestrator.core.reconcile import reconcile_all
from vibe_orchestrator.core.worktrees import find_orphan_worktrees
from vibe_orchestrator.db.state import StateStore
from vibe_orchestrator.integrations import tmux

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "tmux": "install with your package manager (e.g. brew install tmux)",
    "claude": "install from https://claude.ai/code",
    "git": "install from https://git-scm.com",
}


@dataclass
class DoctorReport:
    tools: dict[str, bool] = field(default_factory=dict)
    initialized: bool = False
    tmux_session: str | None = None
    tmux_running: bool = False
    fixed: list[str] = field(default_factory=list)
    orphans: list[dict] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict:
        return {
            "tools": self.tools,
            "initialized": self.initialized,
            "tmux_session": self.tmux_session,
            "tmux_running": self.tmux_running,
            "fixed": self.fixed,
            "orphans": self.orphans,
            "issues": self.issues,
            "healthy": self.healthy,
        }


def run_doctor(store: StateStore, config: Config) -> DoctorReport:
    """Check tools, run a full reconciliation sweep and look for orphaned worktrees."""
    report = DoctorReport()

    for tool, hint in TOOL_HINTS.items():
        found = shutil.which(tool) is not None
        report.tools[tool] = found
        if not found:
            report.issues.append(f"{tool} not found: {hint}")

    if not store.is_initialized():
        report.issues.append("Workspace not initialized: run 'vibe init'")
        return report
    report.initialized = True

    state = store.load()
    report.tmux_session = state.tmux_session_name
    if report.tools["tmux"]:
        try:
            report.tmux_running = tmux.session_exists(state.tmux_session_name)
        except tmux.TmuxError as e:
            logger.warning("Cannot query tmux: %s", e)

    if report.tools["tmux"]:
        report.fixed = reconcile_all(store)
    else:
        logger.warning("Skipping reconciliation: window checks need tmux")

    if report.tools["git"]:
        state = store.load()
        report.orphans = find_orphan_worktrees(
            state.workspace, state.sessions, config.worktree_suffix
        )
        for orphan in report.orphans:
            report.issues.append(
                f"Orphaned worktree {orphan['path']} (branch: {orphan['branch']}); "
                f"remove with: git worktree remove --force {orphan['path']}"
            )

    return report
