"""Thin wrappers over the git CLI for per-task worktrees."""

import subprocess
from pathlib import Path

GIT_TIMEOUT_SECONDS = 60


class GitError(Exception):
    """Raised when git exits non-zero, times out, or cannot be started."""


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = GIT_TIMEOUT_SECONDS,
) -> str:
    """Run ``git <args>`` and return its stripped stdout."""
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {args[0]} timed out after {timeout}s") from e
    except OSError as e:
        raise GitError(f"git {args[0]} could not run: {e}") from e

    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} exited {proc.returncode}: {proc.stderr.strip()}")
    return proc.stdout.strip()


def has_ref(repo_path: str | Path, ref: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path)
    except GitError:
        return False
    return True


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    return has_ref(repo_path, f"refs/heads/{branch}")


def remote_branch_exists(repo_path: str | Path, branch: str, remote: str = "origin") -> bool:
    return has_ref(repo_path, f"refs/remotes/{remote}/{branch}")


def add_worktree(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    start_point: str | None = None,
) -> None:
    """Check ``branch`` out at ``worktree_path``.

    With a start point the branch is created from it; without one the
    branch must already exist locally.
    """
    if start_point is None:
        args = ["worktree", "add", str(worktree_path), branch]
    else:
        args = ["worktree", "add", "-b", branch, str(worktree_path), start_point]
    run_git(args, cwd=repo_path)


def remove_worktree(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> None:
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    run_git(args + [str(worktree_path)], cwd=repo_path)


def prune_worktrees(repo_path: str | Path) -> None:
    """Forget worktrees whose directories were deleted out from under git."""
    run_git(["worktree", "prune"], cwd=repo_path)
