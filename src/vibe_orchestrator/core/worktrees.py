"""Git worktree provisioning for sessions, single-repo and multi-repo."""

import logging
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from vibe_orchestrator.db.models import RepoInfo, Session, Workspace
from vibe_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    default_branch,
    delete_branch,
    fetch,
    has_remote,
    ref_exists,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Where a session's code lives.

    ``path`` is the single worktree, or the session root holding one
    directory per repository.
    """

    path: Path
    branch: str
    repo_worktrees: dict[str, Path] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def short_id() -> str:
    return uuid.uuid4().hex[:8]


def worktree_dir_name(name: str, suffix: str = "vibe") -> str:
    """``{name}-{suffix}-{8 hex}``, unique per call."""
    return f"{name}-{suffix}-{short_id()}"


def fetch_best_effort(repo_path: str | Path) -> bool:
    """Fetch origin if there is one. Failures are logged, never raised."""
    if not has_remote(repo_path):
        return False
    try:
        fetch(repo_path)
        return True
    except GitError as e:
        logger.warning("git fetch in %s failed, continuing with local state: %s", repo_path, e)
        return False


def resolve_base_ref(
    repo_path: str | Path,
    base: str | None = None,
    default: str | None = None,
) -> str:
    """Explicit base, else origin's default branch, else the local default branch."""
    if base:
        return base
    default = default or default_branch(repo_path)
    remote_ref = f"origin/{default}"
    if ref_exists(repo_path, remote_ref):
        return remote_ref
    return default


def create_worktree_at(
    repo_path: str | Path,
    branch: str,
    path: str | Path,
    base: str | None = None,
    default: str | None = None,
) -> Path:
    """Create a worktree at an exact path on ``branch``.

    Tries a new branch at the base first; if that fails (the branch already
    exists) it attaches to the existing branch instead.
    """
    path = Path(path)
    fetch_best_effort(repo_path)
    base_ref = resolve_base_ref(repo_path, base, default)

    try:
        worktree_add(repo_path, path, branch, base_ref, create_branch=True)
    except GitError as first:
        logger.debug("worktree add -b %s failed (%s), attaching to existing branch", branch, first)
        worktree_add(repo_path, path, branch, create_branch=False)

    logger.info("Created worktree %s on %s", path, branch)
    return path


def create_worktree(
    repo_path: str | Path,
    branch: str,
    base_dir: str | Path,
    suffix: str = "vibe",
    base: str | None = None,
    default: str | None = None,
) -> Path:
    """Create a worktree under ``base_dir`` with a generated collision-resistant name."""
    repo_name = Path(repo_path).resolve().name
    path = Path(base_dir) / worktree_dir_name(repo_name, suffix)
    return create_worktree_at(repo_path, branch, path, base, default)


def create_multi_repo_worktrees(
    repos: list[RepoInfo],
    branch: str,
    session_root: str | Path,
    base: str | None = None,
) -> ProvisionResult:
    """One worktree per repository under ``session_root``, created concurrently.

    Succeeds with warnings when at least one repository worked. When none did,
    the session root is removed and a GitError lists every failure.
    """
    session_root = Path(session_root)
    session_root.mkdir(parents=True, exist_ok=True)

    def _create(repo: RepoInfo) -> Path:
        return create_worktree_at(
            repo.root, branch, session_root / repo.name, base, repo.default_branch
        )

    repo_worktrees: dict[str, Path] = {}
    errors: list[str] = []

    with ThreadPoolExecutor(max_workers=max(len(repos), 1)) as pool:
        futures = [(repo, pool.submit(_create, repo)) for repo in repos]
        for repo, future in futures:
            try:
                repo_worktrees[repo.name] = future.result()
            except GitError as e:
                logger.warning("Failed to create worktree for %s: %s", repo.name, e)
                errors.append(f"{repo.name}: {e}")

    if not repo_worktrees:
        shutil.rmtree(session_root, ignore_errors=True)
        raise GitError(f"Failed to create worktrees in any repo: {'; '.join(errors)}")

    if errors:
        logger.warning("%d of %d repo worktrees failed", len(errors), len(repos))

    return ProvisionResult(
        path=session_root,
        branch=branch,
        repo_worktrees=repo_worktrees,
        warnings=errors,
    )


def provision_session(
    workspace: Workspace,
    branch: str,
    base_dir: str | Path,
    suffix: str = "vibe",
    base: str | None = None,
) -> ProvisionResult:
    """Create the working copies a new session needs."""
    if workspace.is_multi_repo:
        session_root = Path(base_dir) / worktree_dir_name(workspace.name, suffix)
        return create_multi_repo_worktrees(workspace.repos, branch, session_root, base)

    path = create_worktree(
        workspace.root, branch, base_dir, suffix, base, workspace.default_branch
    )
    return ProvisionResult(path=path, branch=branch)


# ── Removal ──────────────────────────────────────────────────────────────────


def remove_worktree(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str | None = None,
    delete_branch_after: bool = False,
) -> None:
    """Force-remove a worktree; branch deletion afterwards is best-effort."""
    worktree_remove(repo_path, worktree_path, force=True)
    logger.info("Removed worktree %s", worktree_path)

    if delete_branch_after and branch:
        delete_branch_quietly(repo_path, branch)


def delete_branch_quietly(repo_path: str | Path, branch: str) -> None:
    if not branch_exists(repo_path, branch):
        return
    try:
        delete_branch(repo_path, branch, force=True)
    except GitError as e:
        logger.warning("Failed to delete branch %s: %s", branch, e)


def _repo_pairs(workspace: Workspace, session: Session) -> list[tuple[Path, Path]]:
    if session.repo_worktrees:
        pairs = []
        for name, path in session.repo_worktrees.items():
            repo = workspace.repo_by_name(name)
            if repo is None:
                logger.warning("Repo %s of session %s is no longer in the workspace", name, session.name)
                continue
            pairs.append((repo.root, path))
        return pairs
    return [(workspace.root, session.worktree_path)]


def prune_all(workspace: Workspace) -> None:
    """Drop stale worktree references in every repository of the workspace."""
    roots = [r.root for r in workspace.repos] if workspace.is_multi_repo else [workspace.root]
    for root in roots:
        try:
            worktree_prune(root)
        except GitError as e:
            logger.warning("git worktree prune in %s failed: %s", root, e)


def remove_session_worktrees(
    workspace: Workspace,
    session: Session,
    delete_branch_after: bool = False,
) -> list[str]:
    """Remove every working copy of a session and prune. Returns warnings."""
    if session.is_main:
        raise ValueError("The main session's working copy is never removed")

    warnings = []
    already_gone = []
    for repo_root, path in _repo_pairs(workspace, session):
        if not Path(path).exists():
            already_gone.append(repo_root)
            continue
        try:
            remove_worktree(repo_root, path, session.branch, delete_branch_after)
        except GitError as e:
            warnings.append(f"Failed to remove worktree {path}: {e}")
            logger.warning("Failed to remove worktree %s: %s", path, e)

    if session.repo_worktrees and session.worktree_path.exists():
        shutil.rmtree(session.worktree_path, ignore_errors=True)

    prune_all(workspace)
    # git keeps a missing worktree's branch checked out until it is pruned
    if delete_branch_after:
        for repo_root in already_gone:
            delete_branch_quietly(repo_root, session.branch)
    return warnings


# ── Discovery ────────────────────────────────────────────────────────────────


def _is_managed(path: Path, suffix: str) -> bool:
    marker = f"-{suffix}-"
    return marker in path.name or marker in path.parent.name


def find_orphan_worktrees(
    workspace: Workspace,
    sessions: list[Session],
    suffix: str = "vibe",
) -> list[dict]:
    """Managed worktrees on disk that no session in state refers to."""
    known = set()
    for s in sessions:
        for p in s.worktree_paths():
            known.add(Path(p).resolve())

    roots = [r.root for r in workspace.repos] if workspace.is_multi_repo else [workspace.root]
    orphans = []
    for root in roots:
        try:
            worktrees = worktree_list(root)
        except GitError as e:
            logger.warning("Cannot list worktrees of %s: %s", root, e)
            continue
        for wt in worktrees:
            path = Path(wt.path)
            if wt.is_bare or not _is_managed(path, suffix):
                continue
            if path.resolve() not in known:
                orphans.append({"path": str(path), "branch": wt.branch, "repo": str(root)})
    return orphans
