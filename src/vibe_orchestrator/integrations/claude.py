"""Claude CLI driver: command lines for both agent modes and the JSON output record."""

import json
import logging
import os
import shlex
import shutil
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path

from vibe_orchestrator.db.models import AgentResult

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 500

# Module-level registry of live headless processes (keyed by PID)
_active_processes: dict[int, subprocess.Popen] = {}


class ClaudeError(Exception):
    """Raised when the claude CLI fails or its output cannot be parsed."""


@dataclass
class ClaudeOutput:
    """The record written by ``claude -p --output-format json``."""

    type: str
    subtype: str
    is_error: bool
    duration_ms: int = 0
    num_turns: int = 0
    result: str = ""
    session_id: str = ""

    @property
    def success(self) -> bool:
        return not self.is_error and self.subtype == "success"


def parse_output(text: str) -> ClaudeOutput:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClaudeError(f"Failed to parse claude output: {e}") from e
    if not isinstance(data, dict):
        raise ClaudeError("Failed to parse claude output: not a JSON object")
    try:
        return ClaudeOutput(
            type=data["type"],
            subtype=data["subtype"],
            is_error=bool(data["is_error"]),
            duration_ms=int(data.get("duration_ms") or 0),
            num_turns=int(data.get("num_turns") or 0),
            result=data.get("result") or "",
            session_id=data.get("session_id") or "",
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ClaudeError(f"Failed to parse claude output: missing or bad field {e}") from e


def read_output_file(path: str | Path) -> ClaudeOutput:
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise ClaudeError(f"Cannot read {path}: {e}") from e
    return parse_output(text)


def truncate_summary(text: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def to_agent_result(output: ClaudeOutput) -> AgentResult:
    return AgentResult(
        success=output.success,
        summary=truncate_summary(output.result),
        duration_ms=output.duration_ms,
        session_id=output.session_id,
        raw_result=output.result,
    )


def is_available() -> bool:
    return shutil.which("claude") is not None


# ── Command lines ────────────────────────────────────────────────────────────


def _option_args(
    system_prompt: str | None,
    allowed_tools: list[str] | None,
    disallowed_tools: list[str] | None,
    permission_mode: str | None,
) -> list[str]:
    args: list[str] = []
    if system_prompt:
        args += ["--system-prompt", system_prompt]
    if allowed_tools:
        args += ["--allowedTools", ",".join(allowed_tools)]
    if disallowed_tools:
        args += ["--disallowedTools", ",".join(disallowed_tools)]
    if permission_mode:
        args += ["--permission-mode", permission_mode]
    return args


def interactive_command(
    system_prompt: str | None = None,
    allowed_tools: list[str] | None = None,
    disallowed_tools: list[str] | None = None,
    permission_mode: str | None = None,
    resume_session: str | None = None,
    prompt: str | None = None,
    extra_args: list[str] | None = None,
) -> str:
    """Shell command line that starts an interactive agent inside a pane."""
    parts = ["claude"]
    if resume_session:
        parts += ["--resume", resume_session]
    parts += _option_args(system_prompt, allowed_tools, disallowed_tools, permission_mode)
    parts += extra_args or []
    if prompt:
        parts.append(prompt)
    return shlex.join(parts)


def headless_command(
    prompt: str,
    system_prompt: str | None = None,
    allowed_tools: list[str] | None = None,
    disallowed_tools: list[str] | None = None,
    permission_mode: str | None = None,
    extra_args: list[str] | None = None,
) -> list[str]:
    """Argv for a one-shot agent that prints a single JSON record on stdout."""
    cmd = ["claude", "-p", "--output-format", "json"]
    cmd += _option_args(system_prompt, allowed_tools, disallowed_tools, permission_mode)
    cmd += extra_args or []
    cmd.append(prompt)
    return cmd


def launch_headless(cmd: list[str], cwd: str | Path, output_file: str | Path) -> subprocess.Popen:
    """Start a detached headless agent whose stdout becomes the output artifact.

    stderr goes to ``stderr.log`` beside the artifact.
    """
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    log_file = output_file.with_name("stderr.log")

    try:
        with open(output_file, "w") as out, open(log_file, "w") as err:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                start_new_session=True,
            )
    except OSError as e:
        raise ClaudeError(f"Failed to start claude: {e}") from e

    _active_processes[proc.pid] = proc
    logger.info("Launched headless agent PID %s in %s", proc.pid, cwd)
    return proc


def process_finished(pid: int) -> bool | None:
    """True/False for processes this interpreter started; None when unknown."""
    proc = _active_processes.get(pid)
    if proc is None:
        return None
    if proc.poll() is None:
        return False
    _active_processes.pop(pid, None)
    return True


def terminate(pid: int) -> bool:
    """SIGTERM a headless agent's process group. Returns False if it was already gone."""
    _active_processes.pop(pid, None)
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning("Cannot terminate PID %s: %s", pid, e)
        return False
    return True
