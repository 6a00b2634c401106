"""Configuration loading from environment variables."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    workspace_root: Path = field(default_factory=lambda: Path.cwd())
    state_dir_name: str = ".vibe"
    worktree_base_dir: Path | None = None
    worktree_suffix: str = "vibe"
    tmux_session_prefix: str = "vibe-"
    claude_extra_args: list[str] = field(default_factory=list)
    template_dirs: list[Path] = field(default_factory=list)
    global_config_dir: Path = field(
        default_factory=lambda: Path.home() / ".config" / "vibe"
    )
    dashboard_key: str = "[29~"
    overview_key: str = "[33~"
    tick_interval: float = 1.0
    refresh_interval: float = 3.0
    tmux_timeout: float = 5.0
    event_queue_size: int = 256
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if root := os.environ.get("VIBE_WORKSPACE"):
            config.workspace_root = Path(root)

        if state_dir := os.environ.get("VIBE_STATE_DIR"):
            config.state_dir_name = state_dir

        if base := os.environ.get("VIBE_WORKTREE_BASE_DIR"):
            config.worktree_base_dir = Path(base)

        if suffix := os.environ.get("VIBE_WORKTREE_SUFFIX"):
            config.worktree_suffix = suffix

        if prefix := os.environ.get("VIBE_TMUX_PREFIX"):
            config.tmux_session_prefix = prefix

        if extra := os.environ.get("VIBE_CLAUDE_ARGS"):
            config.claude_extra_args = shlex.split(extra)

        if dirs := os.environ.get("VIBE_TEMPLATE_DIRS"):
            config.template_dirs = [Path(d) for d in dirs.split(os.pathsep) if d]

        if cfg_dir := os.environ.get("VIBE_CONFIG_DIR"):
            config.global_config_dir = Path(cfg_dir)

        if key := os.environ.get("VIBE_DASHBOARD_KEY"):
            config.dashboard_key = key

        if key := os.environ.get("VIBE_OVERVIEW_KEY"):
            config.overview_key = key

        if tick := os.environ.get("VIBE_TICK_INTERVAL"):
            config.tick_interval = float(tick)

        if refresh := os.environ.get("VIBE_REFRESH_INTERVAL"):
            config.refresh_interval = float(refresh)

        if timeout := os.environ.get("VIBE_TMUX_TIMEOUT"):
            config.tmux_timeout = float(timeout)

        if size := os.environ.get("VIBE_EVENT_QUEUE_SIZE"):
            config.event_queue_size = int(size)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("VIBE_SLACK_CHANNEL")

        return config

    def resolved_worktree_base_dir(self, workspace_root: Path | None = None) -> Path:
        """Directory that holds session working copies (sibling of the workspace by default)."""
        if self.worktree_base_dir is not None:
            return self.worktree_base_dir
        root = Path(workspace_root or self.workspace_root).resolve()
        return root.parent

    def template_search_dirs(self, workspace_root: Path | None = None) -> list[Path]:
        """Template directories in priority order: workspace, configured, global."""
        root = Path(workspace_root or self.workspace_root)
        candidates = [root / self.state_dir_name / "templates"]
        candidates += self.template_dirs
        candidates.append(self.global_config_dir / "templates")
        return [d for d in candidates if d.is_dir()]


def get_config() -> Config:
    return Config.from_env()
