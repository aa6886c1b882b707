"""Git worktree listing and management."""

import logging
import re
from pathlib import Path

from specstar.git.runner import run_git
from specstar.lib.ids import worktree_path
from specstar.lib.types import Worktree

logger = logging.getLogger(__name__)

BRANCH_REF_PREFIX = "refs/heads/"


class WorktreeError(Exception):
    """A git worktree command failed."""

    def __init__(self, message: str, path: str | None = None, branch: str | None = None):
        self.path = path
        self.branch = branch
        super().__init__(message)


class WorktreeExists(WorktreeError):
    pass


class WorktreeNotFound(WorktreeError):
    pass


def parse_porcelain(output: str) -> list[Worktree]:
    """Parse `git worktree list --porcelain`.

    Detached worktrees get an empty branch. Dirty state is not part of the
    porcelain output; see list_worktrees.
    """
    worktrees = []
    for block in re.split(r'\n\s*\n', output):
        path = head = branch = ""
        for line in block.splitlines():
            if line.startswith("worktree "):
                path = line[len("worktree "):]
            elif line.startswith("HEAD "):
                head = line[len("HEAD "):]
            elif line.startswith("branch "):
                branch = line[len("branch "):]
                if branch.startswith(BRANCH_REF_PREFIX):
                    branch = branch[len(BRANCH_REF_PREFIX):]
        if path:
            worktrees.append(Worktree(path=worktree_path(path), branch=branch, commit=head))
    return worktrees


def is_dirty(path: Path) -> bool:
    """True if the worktree has staged, unstaged or untracked changes."""
    result = run_git(["status", "--porcelain"], path)
    return result.success and bool(result.stdout.strip())


def list_worktrees(repo: Path, check_dirty: bool = True) -> list[Worktree]:
    """All worktrees of the repository containing `repo`.

    Raises:
        WorktreeError: If git fails
    """
    result = run_git(["worktree", "list", "--porcelain"], repo)
    if not result.success:
        raise WorktreeError(result.stderr.strip() or "git worktree list failed", path=str(repo))

    worktrees = parse_porcelain(result.stdout)
    if not check_dirty:
        return worktrees
    return [
        Worktree(path=wt.path, branch=wt.branch, commit=wt.commit, dirty=is_dirty(Path(wt.path)))
        for wt in worktrees
    ]


def _raise_for(stderr: str, path: str, branch: str | None) -> None:
    lower = stderr.lower()
    if "already checked out" in lower or "already exists" in lower or "is already a worktree" in lower:
        raise WorktreeExists(stderr or "Branch already has a worktree", path=path, branch=branch)
    if "not a working tree" in lower or "does not exist" in lower or "is not a valid path" in lower:
        raise WorktreeNotFound(stderr or "Worktree not found", path=path, branch=branch)
    raise WorktreeError(stderr or "git worktree command failed", path=path, branch=branch)


def create_worktree(repo: Path, branch: str, base_dir: Path, base_ref: str | None = None) -> Worktree:
    """Create a worktree for `branch` under base_dir/<branch with / replaced>.

    The branch is created from base_ref (default HEAD) when it does not exist.
    """
    path = (base_dir / branch.replace("/", "-")).resolve()
    exists = run_git(["rev-parse", "--verify", "--quiet", f"{BRANCH_REF_PREFIX}{branch}"], repo).success

    if exists:
        args = ["worktree", "add", str(path), branch]
    else:
        args = ["worktree", "add", "-b", branch, str(path)] + ([base_ref] if base_ref else [])

    result = run_git(args, repo)
    if not result.success:
        _raise_for(result.stderr.strip(), str(path), branch)

    logger.info(f"Created worktree {path} for {branch}")
    return Worktree(path=worktree_path(str(path)), branch=branch)


def remove_worktree(repo: Path, path: Path, force: bool = False) -> None:
    args = ["worktree", "remove", str(path)] + (["--force"] if force else [])
    result = run_git(args, repo)
    if not result.success:
        _raise_for(result.stderr.strip(), str(path), None)
    logger.info(f"Removed worktree {path}")
