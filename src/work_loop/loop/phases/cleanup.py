"""Cleanup phase: escalate dead agents and stuck reviews, drop finished worktrees."""

import logging
from datetime import timedelta
from pathlib import Path

from work_loop.core.decide import decide
from work_loop.core.tasks import (
    find_stuck_tasks,
    get_task,
    list_tasks,
    update_agent_activity,
)
from work_loop.core.worktrees import remove_worktree_for_task
from work_loop.db.models import Task
from work_loop.loop.context import PhaseContext

logger = logging.getLogger(__name__)

PHASE = "cleanup"


def run_cleanup_phase(ctx: PhaseContext) -> dict:
    counts = {"escalated": 0, "stuck_reviews": 0, "worktrees_removed": 0}

    for task in list_tasks(ctx.db, ctx.project.id, status="in_progress"):
        try:
            if _check_in_progress(ctx, task):
                counts["escalated"] += 1
        except Exception as e:
            logger.exception("Cleanup of task %s failed", task.short_id)
            ctx.log(PHASE, "error", task_id=task.id, details={"error": str(e)})

    stuck = find_stuck_tasks(
        ctx.db, ctx.project.id, ctx.config.stale_review_minutes, status="in_review", now=ctx.now,
    )
    for entry in stuck:
        try:
            if _check_stuck_review(ctx, entry):
                counts["stuck_reviews"] += 1
        except Exception as e:
            logger.exception("Stuck-review check of task %s failed", entry["id"][:8])
            ctx.log(PHASE, "error", task_id=entry["id"], details={"error": str(e)})

    for task in list_tasks(ctx.db, ctx.project.id, status="done"):
        if not task.worktree_path:
            continue
        try:
            result = remove_worktree_for_task(ctx.db, task.id, ctx.project.local_path)
        except Exception as e:
            logger.exception("Worktree removal for task %s failed", task.short_id)
            ctx.log(PHASE, "error", task_id=task.id, details={"error": str(e)})
            continue
        if result["removed"]:
            counts["worktrees_removed"] += 1
            ctx.log(PHASE, "worktree_removed", task_id=task.id, details={"path": result["path"]})

    return counts


def observed_agent_status(ctx: PhaseContext, task: Task) -> str:
    """Agent status for a task, falling back to its session metadata.

    Without a tracked handle (for example after a restart) an agent whose
    recorded activity is older than the stale threshold counts as stale.
    """
    if ctx.tracker.has(task.id):
        return ctx.tracker.status(task.id)
    if task.agent_session_key and task.agent_last_active_at:
        threshold = timedelta(minutes=ctx.config.stale_task_minutes)
        if ctx.now - task.agent_last_active_at > threshold:
            return "stale"
    return "none"


def _check_in_progress(ctx: PhaseContext, task: Task) -> bool:
    handle = ctx.tracker.get(task.id)
    if handle is not None and (
        task.agent_last_active_at is None or handle.last_active_at > task.agent_last_active_at
    ):
        update_agent_activity(ctx.db, task.id, handle.last_active_at)

    agent_status = observed_agent_status(ctx, task)
    action = decide(
        task,
        agent_status=agent_status,
        has_open_pr=False,
        dependencies_met=True,
        capacity_available=True,
        reviewer_capacity_available=True,
    )
    if action.type != "block":
        return False

    session_key = handle.session_key if handle else task.agent_session_key
    comment = (
        f"The agent working on this task ({session_key}) is {agent_status} but never "
        f"reported a result: the task was not moved to in_review, done or blocked. "
        f"Check the agent output, then move the task back to ready to retry."
    )
    ctx.escalate(task, action.reason, comment)
    ctx.log(
        PHASE, "task_blocked", task_id=task.id, session_key=session_key,
        details={"reason": action.reason, "agent_status": agent_status},
    )
    return True


def _check_stuck_review(ctx: PhaseContext, entry: dict) -> bool:
    task = get_task(ctx.db, entry["id"])
    if task is None or ctx.tracker.is_running(task.id):
        return False
    if ctx.tracker.has(task.id):
        ctx.tracker.release(task.id)

    if ctx.reconciler.find_open_pr(task) is not None:
        return False
    if task.pr_number and ctx.reconciler.is_merged(task.pr_number):
        # The review phase completes merged tasks.
        return False

    action = decide(
        task,
        agent_status="none",
        has_open_pr=False,
        dependencies_met=True,
        capacity_available=True,
        reviewer_capacity_available=True,
    )
    if action.type != "block":
        return False

    comment = (
        f"This task has been in review for {entry['age_minutes']} minutes but no open pull "
        f"request was found for branch {task.branch_name}"
        + (f" (recorded PR #{task.pr_number})" if task.pr_number else "")
        + ". Open a PR and move the task back to in_review, or move it to done."
    )
    ctx.escalate(task, action.reason, comment)
    ctx.log(
        PHASE, "task_blocked", task_id=task.id,
        details={"reason": action.reason, "age_minutes": entry["age_minutes"]},
    )
    return True
