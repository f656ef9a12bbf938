"""Per-task git worktrees: one checkout per task branch, next to the main repo."""

import logging
import sqlite3
from pathlib import Path

from work_loop.core.tasks import get_task, log_event, update_task_fields
from work_loop.db.models import Project, Task
from work_loop.integrations.git import (
    GitError,
    add_worktree,
    branch_exists,
    prune_worktrees,
    remote_branch_exists,
    remove_worktree,
)

logger = logging.getLogger(__name__)


def worktree_path_for(project: Project, branch: str) -> str:
    """Worktrees live next to the checkout: <local_path>-worktrees/<branch>."""
    return str(Path(project.worktrees_base) / branch)


def ensure_task_worktree(db: sqlite3.Connection, task: Task, project: Project) -> str:
    """Return the task's worktree path, checking the branch out if needed.

    Agents of every role for the same task share this checkout. Raises
    GitError if git refuses.
    """
    if task.worktree_path and Path(task.worktree_path).is_dir():
        return task.worktree_path

    branch = task.branch_name
    path = Path(worktree_path_for(project, branch))

    if not path.is_dir():
        repo = project.local_path
        path.parent.mkdir(parents=True, exist_ok=True)
        prune_worktrees(repo)
        add_worktree(repo, path, branch, _start_point(repo, branch, project.default_branch))
        log_event(db, task.id, "worktree_created", None, str(path))
        logger.info("Checked out %s at %s for task %s", branch, path, task.short_id)

    update_task_fields(db, task.id, branch=branch, worktree_path=str(path))
    return str(path)


def _start_point(repo: str, branch: str, trunk: str) -> str | None:
    """None reuses the local branch; otherwise the ref to fork the branch from."""
    if branch_exists(repo, branch):
        return None
    if remote_branch_exists(repo, branch):
        return f"origin/{branch}"
    return trunk


def remove_worktree_for_task(
    db: sqlite3.Connection,
    task_id: str,
    repo_path: str | Path,
    force: bool = False,
) -> dict:
    """Drop a task's worktree and forget it on the task. The branch stays."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if not task.worktree_path:
        return {"task_id": task_id, "removed": False, "reason": "no_worktree"}

    path = task.worktree_path
    if Path(path).is_dir():
        try:
            remove_worktree(repo_path, path, force=force)
        except GitError as e:
            # Usually uncommitted changes; left for a human unless forced.
            if force:
                raise
            logger.warning("Kept worktree %s for task %s: %s", path, task.short_id, e)
            return {"task_id": task_id, "removed": False, "reason": str(e)}
    else:
        prune_worktrees(repo_path)

    update_task_fields(db, task_id, worktree_path=None)
    log_event(db, task_id, "worktree_removed", path, None)
    db.commit()
    return {"task_id": task_id, "removed": True, "path": path}
