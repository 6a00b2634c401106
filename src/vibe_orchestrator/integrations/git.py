"""Git subprocess wrappers for worktree, branch and repository discovery."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


# ── Repository discovery ─────────────────────────────────────────────────────


def is_git_repo(path: str | Path) -> bool:
    """A directory is a repository if it holds a .git directory or file."""
    return (Path(path) / ".git").exists()


def find_repo_root(start: str | Path) -> Path | None:
    """Top of the work tree containing ``start``, or None outside any repository."""
    try:
        top = run_git(["rev-parse", "--show-toplevel"], cwd=start)
    except GitError:
        return None
    return Path(top) if top else None


def remote_url(repo_path: str | Path, remote: str = "origin") -> str | None:
    try:
        return run_git(["remote", "get-url", remote], cwd=repo_path) or None
    except GitError:
        return None


def has_remote(repo_path: str | Path, remote: str = "origin") -> bool:
    try:
        remotes = run_git(["remote"], cwd=repo_path)
    except GitError:
        return False
    return remote in remotes.splitlines()


def ref_exists(repo_path: str | Path, ref: str) -> bool:
    """Check if a ref resolves to a commit."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=repo_path)
        return True
    except GitError:
        return False


def default_branch(repo_path: str | Path) -> str:
    """Default branch name: origin's main/master, then the local one, then HEAD."""
    for candidate in ("main", "master"):
        if ref_exists(repo_path, f"refs/remotes/origin/{candidate}"):
            return candidate
    for candidate in ("main", "master"):
        if branch_exists(repo_path, candidate):
            return candidate
    try:
        return run_git(["symbolic-ref", "--short", "HEAD"], cwd=repo_path) or "main"
    except GitError:
        return "main"


def fetch(repo_path: str | Path, remote: str = "origin") -> str:
    return run_git(["fetch", remote], cwd=repo_path)


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_ref: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_ref)
    return run_git(args, cwd=repo_path)


def _parse_worktree_block(current: dict) -> WorktreeInfo:
    return WorktreeInfo(
        path=current.get("worktree", ""),
        branch=current.get("branch", "").replace("refs/heads/", ""),
        head=current.get("HEAD", ""),
        is_bare=current.get("bare", False),
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n"):
        if not line:
            if current:
                worktrees.append(_parse_worktree_block(current))
                current = {}
            continue

        key, _, value = line.partition(" ")
        if key in ("worktree", "HEAD", "branch"):
            current[key] = value
        elif key == "bare":
            current["bare"] = True

    if current:
        worktrees.append(_parse_worktree_block(current))

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches ─────────────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)
