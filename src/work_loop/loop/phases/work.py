"""Work phase: dispatch agents onto ready tasks while capacity lasts."""

import logging

from work_loop.core.agents import SpawnError
from work_loop.core.decide import NO_CAPACITY, decide
from work_loop.core.prompts import build_dev_prompt
from work_loop.core.tasks import dependencies_met, list_comments, list_tasks, update_task_status
from work_loop.core.worktrees import ensure_task_worktree
from work_loop.db.models import DEFAULT_ROLE, REVIEWER_ROLE, Task
from work_loop.integrations.git import GitError
from work_loop.loop.context import WORK_LOOP_ACTOR, PhaseContext

logger = logging.getLogger(__name__)

PHASE = "work"

# Ceilings that apply to every role; hitting one ends the phase.
_SHARED_LIMITS = ("global_max_agents", "project_max_agents")


def run_work_phase(ctx: PhaseContext) -> dict:
    counts = {"dispatched": 0, "skipped": 0}

    for task in list_tasks(ctx.db, ctx.project.id, status="ready"):
        role = task.role if task.role is not None else DEFAULT_ROLE
        limit = ctx.limit_reached(role)
        try:
            action = decide(
                task,
                agent_status=ctx.tracker.status(task.id),
                has_open_pr=False,
                dependencies_met=dependencies_met(ctx.db, task),
                capacity_available=limit is None,
                reviewer_capacity_available=ctx.has_capacity(REVIEWER_ROLE),
            )
            if action.type == "dispatch":
                if _dispatch(ctx, task, action.role):
                    counts["dispatched"] += 1
                else:
                    counts["skipped"] += 1
                continue
        except Exception as e:
            logger.exception("Dispatch of task %s failed", task.short_id)
            ctx.log(PHASE, "error", task_id=task.id, details={"error": str(e)})
            counts["skipped"] += 1
            continue

        counts["skipped"] += 1
        if action.reason == NO_CAPACITY:
            ctx.log(PHASE, "limit_reached", task_id=task.id, details={"reason": limit, "role": role})
            if limit in _SHARED_LIMITS:
                break
            continue
        ctx.log(PHASE, "task_skipped", task_id=task.id, details=action.to_dict())

    return counts


def _dispatch(ctx: PhaseContext, task: Task, role: str) -> bool:
    try:
        worktree = ensure_task_worktree(ctx.db, task, ctx.project)
    except GitError as e:
        logger.warning("Could not create worktree for task %s: %s", task.short_id, e)
        ctx.log(PHASE, "worktree_failed", task_id=task.id, details={"error": str(e)})
        return False

    branch = task.branch_name
    prompt = build_dev_prompt(
        task, ctx.project, branch, worktree,
        comments=list_comments(ctx.db, task.id, include_automated=False),
    )
    try:
        handle = ctx.spawn_agent(
            task,
            role,
            prompt,
            model=ctx.config.agent_default_model,
            timeout_seconds=ctx.config.agent_timeout_seconds,
            cwd=worktree,
        )
    except SpawnError as e:
        logger.error("Agent spawn failed for task %s: %s", task.short_id, e)
        ctx.log(PHASE, "spawn_failed", task_id=task.id, details={"role": role, "error": str(e)})
        return False

    update_task_status(ctx.db, task.id, "in_progress", actor=WORK_LOOP_ACTOR, reason=f"dispatched:{role}")
    ctx.log(
        PHASE, "agent_spawned", task_id=task.id, session_key=handle.session_key,
        details={"role": role, "model": handle.model, "branch": branch, "worktree": worktree},
    )
    return True
