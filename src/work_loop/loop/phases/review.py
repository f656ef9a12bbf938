"""Review phase: get every in_review task's pull request reviewed or resolved.

For each in_review task, highest priority first:

1. A running agent on the task means a reviewer (or conflict resolver) is
   already at work; nothing to do.
2. No open PR: if the recorded PR was merged in the meantime the task is
   done, otherwise there is nothing to review yet.
3. Open PR with merge conflicts goes to the conflict resolution handler.
4. Otherwise a reviewer is dispatched when reviewer capacity allows.

After each task the role and global ceilings are re-checked, and the phase
stops as soon as one is hit.
"""

import logging

from work_loop.core.agents import SpawnError
from work_loop.core.decide import decide
from work_loop.core.prompts import build_reviewer_prompt
from work_loop.core.tasks import (
    list_comments,
    list_tasks,
    log_event,
    update_task_fields,
    update_task_status,
)
from work_loop.core.worktrees import ensure_task_worktree
from work_loop.db.models import CONFLICT_RESOLVER_ROLE, REVIEWER_ROLE, Task
from work_loop.integrations.git import GitError
from work_loop.loop.conflicts import handle_conflicting_pr
from work_loop.loop.context import WORK_LOOP_ACTOR, PhaseContext

logger = logging.getLogger(__name__)

PHASE = "review"


def run_review_phase(ctx: PhaseContext) -> dict:
    tasks = list_tasks(ctx.db, ctx.project.id, status="in_review")
    ctx.log(PHASE, "tasks_found", details={"count": len(tasks)})

    spawned = 0
    skipped = 0
    for task in tasks:
        try:
            result = process_review_task(ctx, task)
        except Exception as e:
            logger.exception("Review of task %s failed", task.short_id)
            ctx.log(PHASE, "error", task_id=task.id, details={"error": str(e)})
            skipped += 1
            continue

        if result["spawned"]:
            spawned += 1
        else:
            skipped += 1
        ctx.log(
            PHASE,
            "reviewer_spawned" if result["spawned"] else "reviewer_skipped",
            task_id=task.id,
            session_key=result.get("session_key"),
            details=result["details"],
        )

        limit = _ceiling_hit(ctx)
        if limit is not None:
            ctx.log(PHASE, "limit_reached", details=limit)
            break

    return {"spawned": spawned, "skipped": skipped}


def process_review_task(ctx: PhaseContext, task: Task) -> dict:
    handle = ctx.tracker.get(task.id)
    if handle is not None and handle.status == "running":
        return {
            "spawned": False,
            "session_key": handle.session_key,
            "details": {"reason": "reviewer_already_running", "role": handle.role},
        }
    if handle is not None:
        # The previous agent on this task (dev or resolver) has ended.
        ctx.tracker.release(task.id)

    pr = ctx.reconciler.find_open_pr(task)
    if pr is None:
        if task.pr_number and ctx.reconciler.is_merged(task.pr_number):
            _complete_merged(ctx, task)
            return {
                "spawned": False,
                "details": {"reason": "pr_already_merged", "pr_number": task.pr_number},
            }
        return {
            "spawned": False,
            "details": {"reason": "no_open_pr", "branch": task.branch_name, "pr_number": task.pr_number},
        }

    updates = {}
    if task.pr_number != pr.number:
        updates["pr_number"] = pr.number
    if pr.head_ref and task.branch != pr.head_ref:
        updates["branch"] = pr.head_ref
    if updates:
        task = update_task_fields(ctx.db, task.id, **updates)

    mergeable = ctx.reconciler.mergeable_status(pr.number)
    if mergeable in ("CONFLICTING", "DIRTY"):
        return handle_conflicting_pr(ctx, task, pr, mergeable)

    action = decide(
        task,
        agent_status=ctx.tracker.status(task.id),
        has_open_pr=True,
        dependencies_met=True,
        capacity_available=ctx.has_capacity(),
        reviewer_capacity_available=ctx.has_capacity(REVIEWER_ROLE),
    )
    if action.type != "dispatch_reviewer":
        return {
            "spawned": False,
            "details": {"reason": "no_capacity", "pr_number": pr.number, "decision": action.to_dict()},
        }

    try:
        worktree = ensure_task_worktree(ctx.db, task, ctx.project)
    except GitError as e:
        logger.warning("No worktree for review of task %s: %s", task.short_id, e)
        return {"spawned": False, "details": {"reason": "worktree_failed", "error": str(e)}}

    prompt = build_reviewer_prompt(
        task, pr, ctx.project, pr.head_ref or task.branch_name, worktree,
        comments=list_comments(ctx.db, task.id, include_automated=False),
    )
    try:
        handle = ctx.spawn_agent(
            task,
            REVIEWER_ROLE,
            prompt,
            model=ctx.config.reviewer_model,
            timeout_seconds=ctx.config.reviewer_timeout_seconds,
            cwd=worktree,
        )
    except SpawnError as e:
        logger.error("Reviewer spawn failed for task %s: %s", task.short_id, e)
        return {"spawned": False, "details": {"reason": "spawn_failed", "error": str(e)}}

    return {
        "spawned": True,
        "session_key": handle.session_key,
        "details": {
            "role": REVIEWER_ROLE,
            "model": handle.model,
            "pr_number": pr.number,
            "mergeable": mergeable,
        },
    }


def _complete_merged(ctx: PhaseContext, task: Task) -> None:
    update_task_status(ctx.db, task.id, "done", actor=WORK_LOOP_ACTOR, reason="pr_already_merged")
    log_event(ctx.db, task.id, "pr_merged", None, str(task.pr_number), actor=WORK_LOOP_ACTOR)
    ctx.db.commit()
    logger.info("PR #%s for task %s is merged, task done", task.pr_number, task.short_id)

    if ctx.deploy_hook is not None and ctx.deploy_hook.configured:
        outcome = ctx.deploy_hook.after_merge(ctx.project, task.pr_number, ctx.reconciler)
        ctx.log(
            PHASE,
            "deployed" if outcome["deployed"] else "deploy_skipped",
            task_id=task.id,
            details={"pr_number": task.pr_number, **outcome},
        )


def _ceiling_hit(ctx: PhaseContext) -> dict | None:
    config = ctx.config
    tracker = ctx.tracker

    reviewers = tracker.active_count_by_role(REVIEWER_ROLE)
    if reviewers >= config.max_reviewer_agents:
        return {"reason": "reviewer_limit", "count": reviewers, "limit": config.max_reviewer_agents}

    active = tracker.active_count()
    if active >= config.max_agents_global:
        return {"reason": "global_max_agents", "count": active, "limit": config.max_agents_global}

    resolvers = tracker.active_count_by_role(CONFLICT_RESOLVER_ROLE)
    if resolvers >= config.max_conflict_resolver_agents:
        return {
            "reason": "conflict_resolver_limit",
            "count": resolvers,
            "limit": config.max_conflict_resolver_agents,
        }
    return None
