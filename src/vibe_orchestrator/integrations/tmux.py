"""tmux subprocess wrappers: sessions, windows, panes and the shared nav bindings.

Every call goes through ``run_tmux``, which retries transient server failures
with exponential backoff. Existence checks report absence as ``False`` instead
of raising.
"""

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE = 0.05
DASHBOARD_WINDOW = "dashboard"
OVERVIEW_TRIGGER = "§"

_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "broken pipe",
    "server exited",
    "lost server",
    "restarting",
)
_ABSENT_MARKERS = (
    "no server running",
    "session not found",
    "can't find session",
    "can't find window",
    "can't find pane",
    "no such file or directory",
)

_timeout = 5.0


class TmuxError(Exception):
    """Raised when a tmux command fails."""


class TransientTmuxError(TmuxError):
    """A failure worth retrying (server restarting, connection reset)."""


class TmuxNotFoundError(TmuxError):
    """The tmux executable is missing. Existence checks must not read this as absence."""


def configure(timeout: float | None = None) -> None:
    """Set the per-command timeout used by every tmux call."""
    global _timeout
    if timeout is not None:
        _timeout = timeout


def is_available() -> bool:
    return shutil.which("tmux") is not None


def inside_tmux() -> bool:
    return bool(os.environ.get("TMUX"))


def is_transient(message: str) -> bool:
    lowered = message.lower()
    return any(m in lowered for m in _TRANSIENT_MARKERS)


def is_absent(message: str) -> bool:
    lowered = message.lower()
    return any(m in lowered for m in _ABSENT_MARKERS)


def _run_once(args: list[str]) -> str:
    try:
        result = subprocess.run(
            ["tmux"] + args,
            capture_output=True,
            text=True,
            timeout=_timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise TmuxError(f"tmux {args[0]} timed out after {_timeout}s") from e
    except FileNotFoundError as e:
        raise TmuxNotFoundError("tmux executable not found on PATH") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        message = f"tmux {args[0]} failed: {stderr}"
        if is_transient(stderr):
            raise TransientTmuxError(message)
        raise TmuxError(message)
    return (result.stdout or "").strip()


def run_tmux(args: list[str], attempts: int = MAX_ATTEMPTS) -> str:
    """Run a tmux command and return stdout, retrying transient failures."""
    for attempt in range(attempts):
        try:
            return _run_once(args)
        except TransientTmuxError as e:
            if attempt == attempts - 1:
                raise
            delay = BACKOFF_BASE * (2 ** attempt)
            logger.debug("Transient tmux failure (%s), retrying in %.2fs", e, delay)
            time.sleep(delay)
    raise TmuxError(f"tmux {args[0]} was not attempted")


def _absent(error: TmuxError) -> bool:
    return not isinstance(error, TmuxNotFoundError) and is_absent(str(error))


def _exists(args: list[str]) -> bool:
    try:
        run_tmux(args)
        return True
    except TmuxError as e:
        if _absent(e):
            return False
        raise


class TmuxBatch:
    """Several tmux commands applied in a single invocation.

    tmux parses a lone ``;`` argument as a command separator, so the whole
    batch is one round-trip to the server.
    """

    def __init__(self):
        self.commands: list[list[str]] = []

    def add(self, *args: str) -> "TmuxBatch":
        self.commands.append(list(args))
        return self

    def __len__(self) -> int:
        return len(self.commands)

    @property
    def args(self) -> list[str]:
        argv: list[str] = []
        for i, cmd in enumerate(self.commands):
            if i:
                argv.append(";")
            argv.extend(cmd)
        return argv

    def run(self) -> str:
        if not self.commands:
            return ""
        return run_tmux(self.args)


# ── Sessions ─────────────────────────────────────────────────────────────────


def session_target(session_name: str) -> str:
    """Exact-match session target. A bare name also matches by prefix."""
    return f"={session_name}"


def window_target(session_name: str, window_name: str) -> str:
    """Exact-match target for a named window. A bare name also matches by prefix."""
    return f"={session_name}:={window_name}"


def session_exists(session_name: str) -> bool:
    return _exists(["has-session", "-t", session_target(session_name)])


def ensure_session(session_name: str, working_dir: str | Path | None = None) -> bool:
    """Create the tmux session if missing. Returns True when it was created."""
    if session_exists(session_name):
        return False
    args = ["new-session", "-d", "-s", session_name, "-x", "200", "-y", "50"]
    if working_dir:
        args += ["-c", str(working_dir)]
    try:
        run_tmux(args)
    except TmuxError as e:
        # Another orchestrator may have created it between the check and here.
        if "duplicate session" in str(e):
            return False
        raise
    logger.debug("Created tmux session %s", session_name)
    return True


# ── Windows and panes ────────────────────────────────────────────────────────


def create_window(session_name: str, window_name: str, working_dir: str | Path) -> str:
    """Open a window and return its stable window id (``@N``)."""
    return run_tmux([
        "new-window", "-d",
        "-t", f"{session_target(session_name)}:",
        "-n", window_name,
        "-c", str(working_dir),
        "-P", "-F", "#{window_id}",
    ])


def split_pane(target: str, working_dir: str | Path, horizontal: bool = True) -> str:
    """Split a window and return the new pane id (``%N``)."""
    return run_tmux([
        "split-window",
        "-t", target,
        "-h" if horizontal else "-v",
        "-c", str(working_dir),
        "-P", "-F", "#{pane_id}",
    ])


def send_text(target: str, text: str) -> None:
    """Type a command line into a pane and press Enter."""
    run_tmux(["send-keys", "-t", target, "-l", text])
    run_tmux(["send-keys", "-t", target, "Enter"])


def capture(target: str, lines: int = 50) -> str:
    return run_tmux(["capture-pane", "-t", target, "-p", "-S", f"-{lines}"])


def window_exists(target: str) -> bool:
    if not target:
        return False
    return _exists(["display-message", "-t", target, "-p", "#{window_id}"])


def pane_exists(pane_id: str) -> bool:
    if not pane_id:
        return False
    try:
        out = run_tmux(["display-message", "-t", pane_id, "-p", "#{pane_id}"])
    except TmuxError as e:
        if _absent(e):
            return False
        raise
    return out == pane_id


def window_identity(target: str) -> tuple[str, str] | None:
    """``(session name, window name)`` of the window ``target`` resolves to, or None."""
    if not target:
        return None
    try:
        out = run_tmux(["display-message", "-t", target, "-p", "#{session_name}\t#{window_name}"])
    except TmuxError as e:
        if _absent(e):
            return None
        raise
    session_name, _, window_name = out.partition("\t")
    return session_name, window_name


def _windows(session_name: str) -> list[tuple[str, str]]:
    try:
        out = run_tmux([
            "list-windows", "-t", session_target(session_name),
            "-F", "#{window_id}\t#{window_name}",
        ])
    except TmuxError as e:
        if _absent(e):
            return []
        raise
    windows = []
    for line in out.splitlines():
        window_id, _, name = line.partition("\t")
        if window_id:
            windows.append((window_id, name))
    return windows


def list_windows(session_name: str) -> list[str]:
    """Window names of a session; empty when the session does not exist."""
    return [name for _, name in _windows(session_name)]


def find_window(session_name: str, window_name: str) -> str | None:
    """Id of the window named exactly ``window_name``, or None."""
    for window_id, name in _windows(session_name):
        if name == window_name:
            return window_id
    return None


def first_pane_id(target: str) -> str:
    out = run_tmux(["list-panes", "-t", target, "-F", "#{pane_id}"])
    return out.splitlines()[0] if out else ""


def kill_window(target: str) -> None:
    run_tmux(["kill-window", "-t", target])


def kill_pane(pane_id: str) -> None:
    run_tmux(["kill-pane", "-t", pane_id])


def select_window(target: str) -> None:
    run_tmux(["select-window", "-t", target])


def disable_auto_rename(target: str) -> None:
    """Keep a window's name fixed while its command changes."""
    (
        TmuxBatch()
        .add("set-option", "-w", "-t", target, "automatic-rename", "off")
        .add("set-option", "-w", "-t", target, "allow-rename", "off")
        .run()
    )


def set_escape_time(ms: int = 50) -> None:
    run_tmux(["set-option", "-s", "escape-time", str(ms)])


def attach(session_name: str) -> int:
    """Attach the terminal to a session, or switch the client when already inside tmux."""
    if inside_tmux():
        run_tmux(["switch-client", "-t", session_target(session_name)])
        return 0
    return subprocess.run(["tmux", "attach-session", "-t", session_target(session_name)]).returncode


# ── Navigation bindings ──────────────────────────────────────────────────────


def nav_condition(session_name: str) -> str:
    """True when focus is outside the dashboard window of our own session."""
    return (
        "#{&&:#{!=:#{window_name}," + DASHBOARD_WINDOW + "},"
        "#{==:#{session_name}," + session_name + "}}"
    )


def build_nav_setup_batch(session_name: str, dashboard_key: str, overview_key: str) -> TmuxBatch:
    """Every option and binding of the nav cluster, overwritten in place."""
    cond = nav_condition(session_name)
    to_dashboard = f"select-window -t :={DASHBOARD_WINDOW}"
    to_overview = f"select-window -t :={DASHBOARD_WINDOW} ; send-keys {OVERVIEW_TRIGGER}"
    return (
        TmuxBatch()
        .add("set-option", "-s", "user-keys[0]", f"\x1b{dashboard_key}")
        .add("set-option", "-s", "user-keys[1]", f"\x1b{overview_key}")
        .add("bind-key", "-n", "User0", "if-shell", "-F", cond, to_dashboard, "send-keys Escape")
        .add("bind-key", "-n", "User1", "if-shell", "-F", cond, to_overview,
             f"send-keys {OVERVIEW_TRIGGER}")
        .add("bind-key", "d", f"if-shell -F '{cond}' '{to_dashboard}' 'send-keys Escape'")
        .add("bind-key", "o",
             f"if-shell -F '{cond}' '{to_overview}' 'send-keys {OVERVIEW_TRIGGER}'")
    )


def build_nav_cleanup_batch() -> TmuxBatch:
    return (
        TmuxBatch()
        .add("unbind-key", "-q", "-n", "User0")
        .add("unbind-key", "-q", "-n", "User1")
        .add("set-option", "-su", "user-keys[0]")
        .add("set-option", "-su", "user-keys[1]")
        .add("unbind-key", "-q", "d")
        .add("unbind-key", "-q", "o")
    )


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_nav_lock(lock_path: Path) -> int | None:
    """PID recorded in the lock; None when there is no lock. Raises ValueError if corrupt."""
    try:
        contents = Path(lock_path).read_text().strip()
    except FileNotFoundError:
        return None
    return int(contents)


def write_nav_lock(lock_path: Path) -> None:
    lock_path = Path(lock_path)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.write_text(str(os.getpid()))
    except OSError as e:
        logger.debug("Failed to write nav lock %s: %s", lock_path, e)


def is_nav_lock_stale(lock_path: Path) -> bool:
    """A lock is stale when its PID is dead or its contents are unreadable."""
    try:
        pid = read_nav_lock(lock_path)
    except ValueError:
        return True
    if pid is None:
        return False
    return not pid_alive(pid)


def setup_nav_bindings(
    session_name: str,
    dashboard_key: str,
    overview_key: str,
    lock_path: Path | None = None,
) -> None:
    """Install the nav cluster in one round-trip and claim ownership."""
    build_nav_setup_batch(session_name, dashboard_key, overview_key).run()
    if lock_path is not None:
        write_nav_lock(lock_path)


def cleanup_nav_bindings(lock_path: Path | None = None) -> bool:
    """Remove the nav cluster if this process owns it (or nobody does).

    Returns True when the bindings were torn down.
    """
    if lock_path is not None:
        try:
            owner = read_nav_lock(lock_path)
        except ValueError:
            owner = None
        if owner is not None and owner != os.getpid():
            logger.debug("Skipping nav cleanup, bindings owned by pid %s", owner)
            return False
        Path(lock_path).unlink(missing_ok=True)

    try:
        build_nav_cleanup_batch().run()
    except TmuxError as e:
        logger.warning("Nav binding cleanup failed: %s", e)
    return True


def verify_nav_bindings(dashboard_key: str, overview_key: str) -> bool:
    """Deep check: user-key values match and User0/User1 are bound."""
    try:
        uk0 = run_tmux(["show-options", "-sv", "user-keys[0]"])
        uk1 = run_tmux(["show-options", "-sv", "user-keys[1]"])
    except TmuxError:
        return False
    # tmux may print the escape byte literally or as "\e"
    if uk0 not in (f"\x1b{dashboard_key}", f"\\e{dashboard_key}"):
        return False
    if uk1 not in (f"\x1b{overview_key}", f"\\e{overview_key}"):
        return False
    try:
        bindings = run_tmux(["list-keys"])
    except TmuxError:
        return False
    return "User0" in bindings and "User1" in bindings


def ensure_nav_bindings(
    session_name: str,
    dashboard_key: str,
    overview_key: str,
    lock_path: Path,
) -> bool:
    """Re-establish the nav cluster if it was lost. Returns True when it re-applied.

    A stale lock is reclaimed. When another live instance owns the lock the
    bindings are restored without taking ownership.
    """
    if verify_nav_bindings(dashboard_key, overview_key):
        return False

    try:
        owner = read_nav_lock(lock_path)
    except ValueError:
        owner = None
    claim = owner is None or owner == os.getpid() or is_nav_lock_stale(lock_path)
    logger.info("Nav bindings missing or corrupted, re-applying (claim=%s)", claim)
    setup_nav_bindings(
        session_name, dashboard_key, overview_key, lock_path if claim else None
    )
    return True
